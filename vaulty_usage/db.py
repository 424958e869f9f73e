"""SQLite storage backend."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from vaulty_usage.backend import StorageBackend, validate_hourly_rows
from vaulty_usage.errors import StorageError
from vaulty_usage.models import HourlyAggregate, InstalledAppRecord, RawEvent, UsageRecord

SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_events (
    id TEXT PRIMARY KEY,
    package_name TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    class_name TEXT,
    date TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    package_name TEXT NOT NULL,
    app_name TEXT NOT NULL,
    start_time INTEGER NOT NULL,
    end_time INTEGER NOT NULL,
    duration INTEGER NOT NULL,
    date TEXT NOT NULL,
    icon TEXT,
    UNIQUE (package_name, start_time, end_time)
);

CREATE TABLE IF NOT EXISTS hourly_aggregates (
    date TEXT NOT NULL,
    hour INTEGER NOT NULL CHECK (hour BETWEEN 0 AND 23),
    package_name TEXT NOT NULL,
    app_name TEXT NOT NULL,
    total_duration INTEGER NOT NULL,
    usage_count INTEGER NOT NULL,
    icon TEXT,
    UNIQUE (date, hour, package_name)
);

CREATE TABLE IF NOT EXISTS installed_apps (
    package_name TEXT PRIMARY KEY,
    app_name TEXT NOT NULL,
    version_name TEXT,
    version_code INTEGER DEFAULT 0,
    first_install_time INTEGER DEFAULT 0,
    last_update_time INTEGER DEFAULT 0,
    is_system_app INTEGER DEFAULT 0,
    icon TEXT,
    is_deleted INTEGER DEFAULT 0,
    last_sync_time INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_checkpoint (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_sync INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_raw_events_date ON raw_events(date);
CREATE INDEX IF NOT EXISTS idx_raw_events_timestamp ON raw_events(timestamp);
CREATE INDEX IF NOT EXISTS idx_usage_records_date ON usage_records(date);
CREATE INDEX IF NOT EXISTS idx_usage_records_package ON usage_records(package_name);
CREATE INDEX IF NOT EXISTS idx_hourly_date ON hourly_aggregates(date);
"""

logger = logging.getLogger(__name__)

_APP_COLUMNS = (
    "package_name",
    "app_name",
    "version_name",
    "version_code",
    "first_install_time",
    "last_update_time",
    "is_system_app",
    "icon",
    "is_deleted",
    "last_sync_time",
)


def _raw_event(row: sqlite3.Row) -> RawEvent:
    return RawEvent(
        package_name=row["package_name"],
        timestamp=row["timestamp"],
        event_type=row["event_type"],
        class_name=row["class_name"],
        date=row["date"],
    )


def _usage_record(row: sqlite3.Row) -> UsageRecord:
    return UsageRecord(
        package_name=row["package_name"],
        app_name=row["app_name"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        duration=row["duration"],
        date=row["date"],
        icon=row["icon"],
    )


def _hourly_aggregate(row: sqlite3.Row) -> HourlyAggregate:
    return HourlyAggregate(
        date=row["date"],
        hour=row["hour"],
        package_name=row["package_name"],
        app_name=row["app_name"],
        total_duration=row["total_duration"],
        usage_count=row["usage_count"],
        icon=row["icon"],
    )


def _installed_app(row: sqlite3.Row) -> InstalledAppRecord:
    data: dict[str, Any] = {column: row[column] for column in _APP_COLUMNS}
    data["is_system_app"] = bool(data["is_system_app"])
    data["is_deleted"] = bool(data["is_deleted"])
    return InstalledAppRecord(**data)


class SqliteBackend(StorageBackend):
    """SQLite-backed storage.

    One connection is shared by all threads and guarded by a lock. Writes
    run inside ``with self._conn:`` so a failed statement rolls back the
    whole batch.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn: sqlite3.Connection | None = conn
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._lock:
            self._connection().executescript(SCHEMA)
            self._connection().commit()

    @classmethod
    def open(cls, path: Path) -> SqliteBackend:
        """Open or create a database at the given path."""
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> SqliteBackend:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Database is closed")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                raise StorageError(f"Database error: {e}") from e

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Database error: {e}") from e

    # Raw events

    def insert_raw_events(self, events: Iterable[RawEvent]) -> int:
        """Insert events keyed by content hash.

        Uses INSERT OR IGNORE for idempotent inserts (same ID = no-op).
        """
        inserted = 0
        with self._transaction() as conn:
            for event in events:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO raw_events
                    (id, package_name, timestamp, event_type, class_name, date)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.compute_id(),
                        event.package_name,
                        event.timestamp,
                        event.event_type.value,
                        event.class_name,
                        event.date,
                    ),
                )
                inserted += cursor.rowcount
        return inserted

    def get_raw_events(
        self,
        *,
        date: str | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> list[RawEvent]:
        conditions = []
        params: list[Any] = []
        if date is not None:
            conditions.append("date = ?")
            params.append(date)
        if start is not None:
            conditions.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            conditions.append("timestamp < ?")
            params.append(end)

        sql = "SELECT * FROM raw_events"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY timestamp ASC, rowid ASC"
        return [_raw_event(row) for row in self._query(sql, params)]

    def delete_raw_events_before(self, date: str) -> int:
        with self._transaction() as conn:
            return conn.execute("DELETE FROM raw_events WHERE date < ?", (date,)).rowcount

    def count_raw_events(self) -> int:
        return self._query("SELECT COUNT(*) FROM raw_events")[0][0]

    # Usage records

    def insert_usage_records(self, records: Iterable[UsageRecord]) -> int:
        inserted = 0
        with self._transaction() as conn:
            for record in records:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO usage_records
                    (package_name, app_name, start_time, end_time, duration, date, icon)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.package_name,
                        record.app_name,
                        record.start_time,
                        record.end_time,
                        record.duration,
                        record.date,
                        record.icon,
                    ),
                )
                inserted += cursor.rowcount
        return inserted

    def get_usage_records(
        self, start_date: str | None = None, end_date: str | None = None
    ) -> list[UsageRecord]:
        conditions = []
        params: list[Any] = []
        if start_date is not None:
            conditions.append("date >= ?")
            params.append(start_date)
        if end_date is not None:
            conditions.append("date <= ?")
            params.append(end_date)

        sql = "SELECT * FROM usage_records"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY start_time ASC, id ASC"
        return [_usage_record(row) for row in self._query(sql, params)]

    def delete_usage_records(self, start_date: str, end_date: str) -> int:
        with self._transaction() as conn:
            return conn.execute(
                "DELETE FROM usage_records WHERE date >= ? AND date <= ?",
                (start_date, end_date),
            ).rowcount

    def delete_usage_records_before(self, date: str) -> int:
        with self._transaction() as conn:
            return conn.execute("DELETE FROM usage_records WHERE date < ?", (date,)).rowcount

    def count_usage_records(self) -> int:
        return self._query("SELECT COUNT(*) FROM usage_records")[0][0]

    # Hourly aggregates

    def replace_hourly_aggregates(self, date: str, rows: Sequence[HourlyAggregate]) -> None:
        validate_hourly_rows(date, rows)
        with self._transaction() as conn:
            conn.execute("DELETE FROM hourly_aggregates WHERE date = ?", (date,))
            conn.executemany(
                """
                INSERT INTO hourly_aggregates
                (date, hour, package_name, app_name, total_duration, usage_count, icon)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        row.date,
                        row.hour,
                        row.package_name,
                        row.app_name,
                        row.total_duration,
                        row.usage_count,
                        row.icon,
                    )
                    for row in rows
                ],
            )
        logger.debug("Replaced hourly aggregates for %s with %d rows", date, len(rows))

    def get_hourly_aggregates(self, date: str) -> list[HourlyAggregate]:
        rows = self._query(
            """
            SELECT * FROM hourly_aggregates WHERE date = ?
            ORDER BY hour ASC, total_duration DESC, package_name ASC
            """,
            (date,),
        )
        return [_hourly_aggregate(row) for row in rows]

    def delete_hourly_aggregates_before(self, date: str) -> int:
        with self._transaction() as conn:
            return conn.execute(
                "DELETE FROM hourly_aggregates WHERE date < ?", (date,)
            ).rowcount

    # Installed apps

    def get_installed_apps(self, *, include_deleted: bool = False) -> list[InstalledAppRecord]:
        sql = "SELECT * FROM installed_apps"
        if not include_deleted:
            sql += " WHERE is_deleted = 0"
        sql += " ORDER BY app_name ASC, package_name ASC"
        return [_installed_app(row) for row in self._query(sql)]

    def get_installed_app(self, package_name: str) -> InstalledAppRecord | None:
        rows = self._query(
            "SELECT * FROM installed_apps WHERE package_name = ?", (package_name,)
        )
        return _installed_app(rows[0]) if rows else None

    def apply_directory_changes(self, records: Sequence[InstalledAppRecord]) -> None:
        placeholders = ", ".join("?" for _ in _APP_COLUMNS)
        with self._transaction() as conn:
            conn.executemany(
                f"INSERT OR REPLACE INTO installed_apps ({', '.join(_APP_COLUMNS)}) "
                f"VALUES ({placeholders})",
                [
                    (
                        r.package_name,
                        r.app_name,
                        r.version_name,
                        r.version_code,
                        r.first_install_time,
                        r.last_update_time,
                        int(r.is_system_app),
                        r.icon,
                        int(r.is_deleted),
                        r.last_sync_time,
                    )
                    for r in records
                ],
            )

    def purge_deleted_apps(self, before: int) -> int:
        with self._transaction() as conn:
            return conn.execute(
                """
                DELETE FROM installed_apps
                WHERE is_deleted = 1 AND last_sync_time < ?
                AND package_name NOT IN (SELECT package_name FROM usage_records)
                AND package_name NOT IN (SELECT package_name FROM hourly_aggregates)
                """,
                (before,),
            ).rowcount

    # Checkpoint

    def get_checkpoint(self) -> int | None:
        rows = self._query("SELECT last_sync FROM sync_checkpoint WHERE id = 1")
        return rows[0][0] if rows else None

    def set_checkpoint(self, last_sync: int) -> int:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_checkpoint (id, last_sync) VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET last_sync = MAX(last_sync, excluded.last_sync)
                """,
                (last_sync,),
            )
            return conn.execute("SELECT last_sync FROM sync_checkpoint WHERE id = 1").fetchone()[0]
