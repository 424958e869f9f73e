"""Contract tests run against both storage backends."""

import pytest

from factories import make_app, ms, paused, raw, resumed

from vaulty_usage.db import SqliteBackend
from vaulty_usage.errors import StorageError
from vaulty_usage.models import HourlyAggregate, InstalledAppRecord, UsageRecord


def aggregate(date="2025-01-25", hour=10, package="com.a", total=1000, count=1):
    return HourlyAggregate(
        date=date,
        hour=hour,
        package_name=package,
        app_name=package,
        total_duration=total,
        usage_count=count,
    )


def usage(package="com.a", start=0, end=1000, date="2025-01-25"):
    return UsageRecord(
        package_name=package,
        app_name=package,
        start_time=start,
        end_time=end,
        duration=end - start,
        date=date,
    )


def installed(package, *, deleted=False, last_sync=0):
    return InstalledAppRecord(
        **make_app(package).model_dump(), is_deleted=deleted, last_sync_time=last_sync
    )


class TestRawEvents:
    """Tests for raw event storage."""

    def test_insert_and_query_by_date(self, backend):
        events = [
            raw(resumed("com.a", ms("2025-01-25T10:00:00"))),
            raw(paused("com.a", ms("2025-01-25T10:05:00"))),
            raw(resumed("com.a", ms("2025-01-26T09:00:00"))),
        ]
        assert backend.insert_raw_events(events) == 3

        day = backend.get_raw_events(date="2025-01-25")
        assert day == events[:2]
        assert backend.count_raw_events() == 3

    def test_duplicates_are_ignored(self, backend):
        """Re-ingesting the same transition is a no-op."""
        event = raw(resumed("com.a", ms("2025-01-25T10:00:00"), class_name="MainActivity"))
        assert backend.insert_raw_events([event]) == 1
        assert backend.insert_raw_events([event, event]) == 0
        assert backend.count_raw_events() == 1

    def test_class_name_distinguishes_events(self, backend):
        ts = ms("2025-01-25T10:00:00")
        inserted = backend.insert_raw_events([
            raw(resumed("com.a", ts, class_name="One")),
            raw(resumed("com.a", ts, class_name="Two")),
        ])
        assert inserted == 2

    def test_time_window_query(self, backend):
        backend.insert_raw_events([raw(resumed("com.a", t)) for t in (1000, 2000, 3000)])
        events = backend.get_raw_events(start=2000, end=3000)
        assert [e.timestamp for e in events] == [2000]

    def test_ties_keep_insertion_order(self, backend):
        backend.insert_raw_events([
            raw(resumed("com.a", 5000)),
            raw(paused("com.a", 5000)),
        ])
        assert [e.event_type.value for e in backend.get_raw_events()] == [
            "ACTIVITY_RESUMED",
            "ACTIVITY_PAUSED",
        ]

    def test_delete_before(self, backend):
        backend.insert_raw_events([
            raw(resumed("com.a", ms("2025-01-20T10:00:00"))),
            raw(resumed("com.a", ms("2025-01-25T10:00:00"))),
        ])
        assert backend.delete_raw_events_before("2025-01-25") == 1
        assert [e.date for e in backend.get_raw_events()] == ["2025-01-25"]


class TestUsageRecords:
    """Tests for usage record storage."""

    def test_insert_ignores_repeats(self, backend):
        assert backend.insert_usage_records([usage(), usage(start=2000, end=3000)]) == 2
        assert backend.insert_usage_records([usage()]) == 0
        assert backend.count_usage_records() == 2

    def test_date_range_inclusive(self, backend):
        backend.insert_usage_records([
            usage(start=1, date="2025-01-24"),
            usage(start=2, date="2025-01-25"),
            usage(start=3, date="2025-01-26"),
        ])
        records = backend.get_usage_records("2025-01-25", "2025-01-26")
        assert [r.date for r in records] == ["2025-01-25", "2025-01-26"]

    def test_delete_range(self, backend):
        backend.insert_usage_records([
            usage(start=1, date="2025-01-24"),
            usage(start=2, date="2025-01-25"),
        ])
        assert backend.delete_usage_records("2025-01-25", "2025-01-25") == 1
        assert backend.delete_usage_records_before("2025-01-25") == 1
        assert backend.count_usage_records() == 0


class TestHourlyAggregates:
    """Tests for hourly aggregate storage."""

    def test_replace_is_wholesale(self, backend):
        backend.replace_hourly_aggregates(
            "2025-01-25", [aggregate(hour=1), aggregate(hour=2)]
        )
        backend.replace_hourly_aggregates("2025-01-25", [aggregate(hour=3)])
        assert [r.hour for r in backend.get_hourly_aggregates("2025-01-25")] == [3]

    def test_replace_leaves_other_dates(self, backend):
        backend.replace_hourly_aggregates("2025-01-24", [aggregate(date="2025-01-24")])
        backend.replace_hourly_aggregates("2025-01-25", [])
        assert len(backend.get_hourly_aggregates("2025-01-24")) == 1

    def test_ordered_by_hour_then_total(self, backend):
        backend.replace_hourly_aggregates(
            "2025-01-25",
            [
                aggregate(hour=5, package="com.small", total=10),
                aggregate(hour=5, package="com.big", total=99),
                aggregate(hour=2, package="com.early", total=1),
            ],
        )
        rows = backend.get_hourly_aggregates("2025-01-25")
        assert [r.package_name for r in rows] == ["com.early", "com.big", "com.small"]

    def test_duplicate_key_rejected_atomically(self, backend):
        """A failed replace leaves the previous rows in place."""
        backend.replace_hourly_aggregates("2025-01-25", [aggregate(hour=1)])
        with pytest.raises(StorageError):
            backend.replace_hourly_aggregates(
                "2025-01-25", [aggregate(hour=4), aggregate(hour=4)]
            )
        assert [r.hour for r in backend.get_hourly_aggregates("2025-01-25")] == [1]

    def test_wrong_date_rejected(self, backend):
        with pytest.raises(StorageError):
            backend.replace_hourly_aggregates("2025-01-25", [aggregate(date="2025-01-26")])

    def test_delete_before(self, backend):
        backend.replace_hourly_aggregates("2025-01-20", [aggregate(date="2025-01-20")])
        backend.replace_hourly_aggregates("2025-01-25", [aggregate()])
        assert backend.delete_hourly_aggregates_before("2025-01-21") == 1
        assert backend.get_hourly_aggregates("2025-01-20") == []


class TestInstalledApps:
    """Tests for installed app storage."""

    def test_upsert_and_filter_deleted(self, backend):
        backend.apply_directory_changes([installed("com.a"), installed("com.b", deleted=True)])
        assert [a.package_name for a in backend.get_installed_apps()] == ["com.a"]
        assert len(backend.get_installed_apps(include_deleted=True)) == 2
        assert backend.get_installed_app("com.b").is_deleted
        assert backend.get_installed_app("com.zzz") is None

    def test_upsert_replaces_record(self, backend):
        backend.apply_directory_changes([installed("com.a")])
        backend.apply_directory_changes([installed("com.a", deleted=True, last_sync=5)])
        record = backend.get_installed_app("com.a")
        assert record.is_deleted
        assert record.last_sync_time == 5

    def test_purge_skips_referenced_and_recent(self, backend):
        backend.apply_directory_changes([
            installed("com.old", deleted=True, last_sync=100),
            installed("com.used", deleted=True, last_sync=100),
            installed("com.recent", deleted=True, last_sync=900),
            installed("com.live", last_sync=100),
        ])
        backend.insert_usage_records([usage(package="com.used")])

        assert backend.purge_deleted_apps(before=500) == 1

        remaining = {a.package_name for a in backend.get_installed_apps(include_deleted=True)}
        assert remaining == {"com.used", "com.recent", "com.live"}

    def test_purge_respects_hourly_references(self, backend):
        backend.apply_directory_changes([installed("com.a", deleted=True, last_sync=100)])
        backend.replace_hourly_aggregates("2025-01-25", [aggregate(package="com.a")])
        assert backend.purge_deleted_apps(before=500) == 0


class TestCheckpoint:
    """Tests for the sync checkpoint."""

    def test_initially_none(self, backend):
        assert backend.get_checkpoint() is None

    def test_never_moves_backwards(self, backend):
        assert backend.set_checkpoint(2000) == 2000
        assert backend.set_checkpoint(1000) == 2000
        assert backend.get_checkpoint() == 2000
        assert backend.set_checkpoint(3000) == 3000


class TestClosed:
    """Tests for use after close."""

    def test_operations_raise_storage_error(self, backend):
        backend.close()
        with pytest.raises(StorageError):
            backend.get_checkpoint()
        with pytest.raises(StorageError):
            backend.insert_raw_events([raw(resumed("com.a", 1))])


class TestSqliteFile:
    """Tests specific to the on-disk SQLite backend."""

    def test_data_persists_across_opens(self, tmp_path):
        db_path = tmp_path / "nested" / "usage.db"
        with SqliteBackend.open(db_path) as store:
            store.insert_raw_events([raw(resumed("com.a", 1000))])
            store.set_checkpoint(1234)

        with SqliteBackend.open(db_path) as store:
            assert store.count_raw_events() == 1
            assert store.get_checkpoint() == 1234
