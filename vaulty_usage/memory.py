"""In-process storage backend.

Holds everything in dictionaries guarded by one lock. Multi-row writes build
the new state first and swap it in, so a failure leaves nothing half-applied.
Used by tests and by ``VAULTY_USAGE_BACKEND=memory``.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence

from vaulty_usage.backend import StorageBackend, validate_hourly_rows
from vaulty_usage.errors import StorageError
from vaulty_usage.models import HourlyAggregate, InstalledAppRecord, RawEvent, UsageRecord


class MemoryBackend(StorageBackend):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._closed = False
        # Insertion order of these dicts is the rowid order
        self._raw: dict[str, RawEvent] = {}
        self._records: dict[tuple[str, int, int], UsageRecord] = {}
        self._hourly: dict[str, list[HourlyAggregate]] = {}
        self._apps: dict[str, InstalledAppRecord] = {}
        self._checkpoint: int | None = None

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("Storage is closed")

    # Raw events

    def insert_raw_events(self, events: Iterable[RawEvent]) -> int:
        with self._lock:
            self._check_open()
            staged = dict(self._raw)
            for event in events:
                staged.setdefault(event.compute_id(), event)
            inserted = len(staged) - len(self._raw)
            self._raw = staged
            return inserted

    def get_raw_events(
        self,
        *,
        date: str | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> list[RawEvent]:
        with self._lock:
            self._check_open()
            events = [
                e
                for e in self._raw.values()
                if (date is None or e.date == date)
                and (start is None or e.timestamp >= start)
                and (end is None or e.timestamp < end)
            ]
        return sorted(events, key=lambda e: e.timestamp)

    def delete_raw_events_before(self, date: str) -> int:
        with self._lock:
            self._check_open()
            kept = {k: e for k, e in self._raw.items() if e.date >= date}
            deleted = len(self._raw) - len(kept)
            self._raw = kept
            return deleted

    def count_raw_events(self) -> int:
        with self._lock:
            self._check_open()
            return len(self._raw)

    # Usage records

    def insert_usage_records(self, records: Iterable[UsageRecord]) -> int:
        with self._lock:
            self._check_open()
            staged = dict(self._records)
            for record in records:
                staged.setdefault(
                    (record.package_name, record.start_time, record.end_time), record
                )
            inserted = len(staged) - len(self._records)
            self._records = staged
            return inserted

    def get_usage_records(
        self, start_date: str | None = None, end_date: str | None = None
    ) -> list[UsageRecord]:
        with self._lock:
            self._check_open()
            records = [
                r
                for r in self._records.values()
                if (start_date is None or r.date >= start_date)
                and (end_date is None or r.date <= end_date)
            ]
        return sorted(records, key=lambda r: r.start_time)

    def _delete_records(self, keep) -> int:
        with self._lock:
            self._check_open()
            kept = {k: r for k, r in self._records.items() if keep(r)}
            deleted = len(self._records) - len(kept)
            self._records = kept
            return deleted

    def delete_usage_records(self, start_date: str, end_date: str) -> int:
        return self._delete_records(lambda r: not (start_date <= r.date <= end_date))

    def delete_usage_records_before(self, date: str) -> int:
        return self._delete_records(lambda r: r.date >= date)

    def count_usage_records(self) -> int:
        with self._lock:
            self._check_open()
            return len(self._records)

    # Hourly aggregates

    def replace_hourly_aggregates(self, date: str, rows: Sequence[HourlyAggregate]) -> None:
        validate_hourly_rows(date, rows)
        with self._lock:
            self._check_open()
            staged = dict(self._hourly)
            if rows:
                staged[date] = list(rows)
            else:
                staged.pop(date, None)
            self._hourly = staged

    def get_hourly_aggregates(self, date: str) -> list[HourlyAggregate]:
        with self._lock:
            self._check_open()
            rows = list(self._hourly.get(date, []))
        return sorted(rows, key=lambda r: (r.hour, -r.total_duration, r.package_name))

    def delete_hourly_aggregates_before(self, date: str) -> int:
        with self._lock:
            self._check_open()
            kept = {d: rows for d, rows in self._hourly.items() if d >= date}
            deleted = sum(len(rows) for d, rows in self._hourly.items() if d < date)
            self._hourly = kept
            return deleted

    # Installed apps

    def get_installed_apps(self, *, include_deleted: bool = False) -> list[InstalledAppRecord]:
        with self._lock:
            self._check_open()
            apps = [a for a in self._apps.values() if include_deleted or not a.is_deleted]
        return sorted(apps, key=lambda a: (a.app_name, a.package_name))

    def get_installed_app(self, package_name: str) -> InstalledAppRecord | None:
        with self._lock:
            self._check_open()
            return self._apps.get(package_name)

    def apply_directory_changes(self, records: Sequence[InstalledAppRecord]) -> None:
        with self._lock:
            self._check_open()
            staged = dict(self._apps)
            for record in records:
                staged[record.package_name] = record
            self._apps = staged

    def purge_deleted_apps(self, before: int) -> int:
        with self._lock:
            self._check_open()
            referenced = {r.package_name for r in self._records.values()}
            for rows in self._hourly.values():
                referenced.update(r.package_name for r in rows)
            kept = {
                package: app
                for package, app in self._apps.items()
                if not (
                    app.is_deleted
                    and app.last_sync_time < before
                    and package not in referenced
                )
            }
            purged = len(self._apps) - len(kept)
            self._apps = kept
            return purged

    # Checkpoint

    def get_checkpoint(self) -> int | None:
        with self._lock:
            self._check_open()
            return self._checkpoint

    def set_checkpoint(self, last_sync: int) -> int:
        with self._lock:
            self._check_open()
            if self._checkpoint is None or last_sync > self._checkpoint:
                self._checkpoint = last_sync
            return self._checkpoint
