"""Storage backend interface shared by the SQLite and in-memory stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

from vaulty_usage.errors import StorageError
from vaulty_usage.models import HourlyAggregate, InstalledAppRecord, RawEvent, UsageRecord


def validate_hourly_rows(date: str, rows: Sequence[HourlyAggregate]) -> None:
    """Reject rows for another date or with a repeated (hour, package) key.

    Raises:
        StorageError: If the rows cannot be stored as one date's aggregates.
    """
    seen: set[tuple[int, str]] = set()
    for row in rows:
        if row.date != date:
            raise StorageError(f"Aggregate for {row.date} in replace of {date}")
        key = (row.hour, row.package_name)
        if key in seen:
            raise StorageError(
                f"Duplicate aggregate for {date} hour {row.hour} {row.package_name}"
            )
        seen.add(key)


class StorageBackend(ABC):
    """Persistence for raw events, usage records, aggregates, apps and the checkpoint.

    Every method that writes more than one row is all-or-nothing: on failure
    it raises StorageError and leaves storage unchanged. Implementations are
    safe to share across threads.
    """

    def __enter__(self) -> StorageBackend:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    @abstractmethod
    def close(self) -> None: ...

    # Raw events

    @abstractmethod
    def insert_raw_events(self, events: Iterable[RawEvent]) -> int:
        """Insert events, ignoring ones already stored. Returns the number inserted."""

    @abstractmethod
    def get_raw_events(
        self,
        *,
        date: str | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> list[RawEvent]:
        """Query raw events ordered by timestamp then insertion order.

        Args:
            date: Local date to match exactly.
            start: Inclusive lower timestamp bound.
            end: Exclusive upper timestamp bound.
        """

    @abstractmethod
    def delete_raw_events_before(self, date: str) -> int: ...

    @abstractmethod
    def count_raw_events(self) -> int: ...

    # Usage records

    @abstractmethod
    def insert_usage_records(self, records: Iterable[UsageRecord]) -> int:
        """Insert records, ignoring repeats of (package, start, end).

        Returns the number inserted.
        """

    @abstractmethod
    def get_usage_records(
        self, start_date: str | None = None, end_date: str | None = None
    ) -> list[UsageRecord]:
        """Records with start_date <= date <= end_date, ordered by start time."""

    @abstractmethod
    def delete_usage_records(self, start_date: str, end_date: str) -> int: ...

    @abstractmethod
    def delete_usage_records_before(self, date: str) -> int: ...

    @abstractmethod
    def count_usage_records(self) -> int: ...

    # Hourly aggregates

    @abstractmethod
    def replace_hourly_aggregates(self, date: str, rows: Sequence[HourlyAggregate]) -> None:
        """Atomically replace every aggregate row of ``date`` with ``rows``."""

    @abstractmethod
    def get_hourly_aggregates(self, date: str) -> list[HourlyAggregate]:
        """Rows of one date ordered by hour, then total duration descending."""

    @abstractmethod
    def delete_hourly_aggregates_before(self, date: str) -> int: ...

    # Installed apps

    @abstractmethod
    def get_installed_apps(self, *, include_deleted: bool = False) -> list[InstalledAppRecord]:
        """Installed app records ordered by app name."""

    @abstractmethod
    def get_installed_app(self, package_name: str) -> InstalledAppRecord | None:
        """Look up one record, tombstoned or not."""

    @abstractmethod
    def apply_directory_changes(self, records: Sequence[InstalledAppRecord]) -> None:
        """Upsert records by package name in one transaction."""

    @abstractmethod
    def purge_deleted_apps(self, before: int) -> int:
        """Hard-delete tombstones last synced before ``before``.

        Records still referenced by usage records or hourly aggregates are kept.
        """

    # Checkpoint

    @abstractmethod
    def get_checkpoint(self) -> int | None: ...

    @abstractmethod
    def set_checkpoint(self, last_sync: int) -> int:
        """Advance the checkpoint. It never moves backwards; returns the stored value."""
