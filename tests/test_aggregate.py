"""Tests for hourly splitting and aggregation."""

import threading
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from factories import UTC, make_app, ms, paused, raw, resumed

from vaulty_usage.aggregate import (
    HourlyAggregator,
    HourSlice,
    compute_hourly_aggregates,
    split_session,
)
from vaulty_usage.errors import StorageError
from vaulty_usage.models import HourlyAggregate, InstalledAppRecord, UsageSession
from vaulty_usage.timeutil import HOUR_MS


def record(app, **kwargs) -> InstalledAppRecord:
    return InstalledAppRecord(**app.model_dump(), last_sync_time=0, **kwargs)


class TestSplitSession:
    """Tests for splitting a session at hour boundaries."""

    def test_within_one_hour(self):
        session = UsageSession("com.a", ms("2025-01-25T10:05:00"), ms("2025-01-25T10:45:00"))
        assert split_session(session, UTC) == [HourSlice("2025-01-25", 10, 40 * 60_000)]

    def test_spanning_three_hours(self):
        """10:50 to 13:10 splits into 10m, 60m, 60m, 10m."""
        session = UsageSession("com.a", ms("2025-01-25T10:50:00"), ms("2025-01-25T13:10:00"))
        assert split_session(session, UTC) == [
            HourSlice("2025-01-25", 10, 600_000),
            HourSlice("2025-01-25", 11, 3_600_000),
            HourSlice("2025-01-25", 12, 3_600_000),
            HourSlice("2025-01-25", 13, 600_000),
        ]

    def test_ending_on_boundary_has_no_empty_slice(self):
        session = UsageSession("com.a", ms("2025-01-25T10:30:00"), ms("2025-01-25T12:00:00"))
        assert split_session(session, UTC) == [
            HourSlice("2025-01-25", 10, 1_800_000),
            HourSlice("2025-01-25", 11, 3_600_000),
        ]

    def test_crossing_midnight(self):
        session = UsageSession("com.a", ms("2025-01-25T23:50:00"), ms("2025-01-26T00:20:00"))
        assert split_session(session, UTC) == [
            HourSlice("2025-01-25", 23, 600_000),
            HourSlice("2025-01-26", 0, 1_200_000),
        ]

    def test_durations_sum_to_session(self):
        start = ms("2025-01-25T03:17:42")
        session = UsageSession("com.a", start, start + 5 * HOUR_MS + 123_456)
        assert sum(s.duration for s in split_session(session, UTC)) == session.duration

    def test_empty_session(self):
        assert split_session(UsageSession("com.a", 1000, 1000), UTC) == []

    def test_local_zone_hours(self):
        """Hours are local clock hours of the given zone."""
        try:
            tz = ZoneInfo("America/New_York")
        except ZoneInfoNotFoundError:
            pytest.skip("time zone database not available")
        # 15:10-15:20 UTC is 10:10-10:20 EST
        session = UsageSession("com.a", ms("2025-01-25T15:10:00"), ms("2025-01-25T15:20:00"))
        assert split_session(session, tz) == [HourSlice("2025-01-25", 10, 600_000)]


class TestComputeHourlyAggregates:
    """Tests for the pure aggregation function."""

    def test_counts_each_fragment_once(self):
        session = UsageSession("com.a", ms("2025-01-25T10:50:00"), ms("2025-01-25T13:10:00"))
        rows = compute_hourly_aggregates("2025-01-25", [session], {}, UTC)
        assert [(r.hour, r.total_duration, r.usage_count) for r in rows] == [
            (10, 600_000, 1),
            (11, 3_600_000, 1),
            (12, 3_600_000, 1),
            (13, 600_000, 1),
        ]

    def test_sums_sessions_in_same_hour(self):
        sessions = [
            UsageSession("com.a", ms("2025-01-25T10:00:00"), ms("2025-01-25T10:05:00")),
            UsageSession("com.a", ms("2025-01-25T10:30:00"), ms("2025-01-25T10:40:00")),
        ]
        [row] = compute_hourly_aggregates("2025-01-25", sessions, {}, UTC)
        assert row.total_duration == 15 * 60_000
        assert row.usage_count == 2

    def test_conservation_per_package(self):
        """Hour totals of a package add up to its session durations."""
        sessions = [
            UsageSession("com.a", ms("2025-01-25T01:10:00"), ms("2025-01-25T04:59:59")),
            UsageSession("com.a", ms("2025-01-25T06:00:00"), ms("2025-01-25T06:00:01")),
            UsageSession("com.b", ms("2025-01-25T05:30:00"), ms("2025-01-25T07:45:00")),
        ]
        rows = compute_hourly_aggregates("2025-01-25", sessions, {}, UTC)
        for package in ("com.a", "com.b"):
            expected = sum(s.duration for s in sessions if s.package_name == package)
            assert sum(r.total_duration for r in rows if r.package_name == package) == expected

    def test_other_dates_ignored(self):
        session = UsageSession("com.a", ms("2025-01-25T23:50:00"), ms("2025-01-26T00:20:00"))
        rows = compute_hourly_aggregates("2025-01-25", [session], {}, UTC)
        assert [(r.date, r.hour) for r in rows] == [("2025-01-25", 23)]

    def test_labels_from_directory(self):
        apps = {"com.a": record(make_app("com.a", "Alpha", icon="a.png"))}
        session = UsageSession("com.a", ms("2025-01-25T10:00:00"), ms("2025-01-25T10:05:00"))
        [row] = compute_hourly_aggregates("2025-01-25", [session], apps, UTC)
        assert row.app_name == "Alpha"
        assert row.icon == "a.png"

    def test_labels_fall_back_to_package_name(self):
        session = UsageSession(
            "com.google.android.youtube", ms("2025-01-25T10:00:00"), ms("2025-01-25T10:05:00")
        )
        [row] = compute_hourly_aggregates("2025-01-25", [session], {}, UTC)
        assert row.app_name == "YouTube"

    def test_rows_ordered_by_hour_then_duration(self):
        sessions = [
            UsageSession("com.a", ms("2025-01-25T11:00:00"), ms("2025-01-25T11:01:00")),
            UsageSession("com.b", ms("2025-01-25T11:10:00"), ms("2025-01-25T11:30:00")),
            UsageSession("com.c", ms("2025-01-25T09:00:00"), ms("2025-01-25T09:01:00")),
        ]
        rows = compute_hourly_aggregates("2025-01-25", sessions, {}, UTC)
        assert [(r.hour, r.package_name) for r in rows] == [
            (9, "com.c"),
            (11, "com.b"),
            (11, "com.a"),
        ]


class TestHourlyAggregator:
    """Tests for recomputing stored aggregates."""

    def events(self):
        return [
            raw(resumed("com.a", ms("2025-01-25T10:50:00"))),
            raw(resumed("com.b", ms("2025-01-25T11:05:00"))),
            raw(paused("com.a", ms("2025-01-25T11:10:00"))),
        ]

    def test_aggregate_date_stores_rows(self, backend):
        backend.insert_raw_events(self.events())
        aggregator = HourlyAggregator(backend, UTC)

        rows = aggregator.aggregate_date("2025-01-25")

        stored = backend.get_hourly_aggregates("2025-01-25")
        assert stored == rows
        assert [(r.hour, r.package_name, r.total_duration, r.usage_count) for r in stored] == [
            (10, "com.a", 600_000, 1),
            (11, "com.a", 600_000, 1),
        ]

    def test_idempotent(self, backend):
        """Running twice leaves the same rows."""
        backend.insert_raw_events(self.events())
        aggregator = HourlyAggregator(backend, UTC)
        aggregator.aggregate_date("2025-01-25")
        first = backend.get_hourly_aggregates("2025-01-25")
        aggregator.aggregate_date("2025-01-25")
        assert backend.get_hourly_aggregates("2025-01-25") == first

    def test_no_raw_events_keeps_existing_rows(self, backend):
        existing = HourlyAggregate(
            date="2025-01-20",
            hour=8,
            package_name="com.a",
            app_name="A",
            total_duration=1000,
            usage_count=1,
        )
        backend.replace_hourly_aggregates("2025-01-20", [existing])
        aggregator = HourlyAggregator(backend, UTC)

        assert aggregator.aggregate_date("2025-01-20") == []
        assert backend.get_hourly_aggregates("2025-01-20") == [existing]

    def test_uses_tombstoned_app_names(self, backend):
        backend.apply_directory_changes([record(make_app("com.a", "Alpha"), is_deleted=True)])
        backend.insert_raw_events(self.events())
        rows = HourlyAggregator(backend, UTC).aggregate_date("2025-01-25")
        assert {r.app_name for r in rows} == {"Alpha"}

    def test_submit_runs_in_background(self, backend):
        backend.insert_raw_events(self.events())
        aggregator = HourlyAggregator(backend, UTC)
        try:
            future = aggregator.submit("2025-01-25")
            rows = future.result(timeout=10)
        finally:
            aggregator.close()
        assert len(rows) == 2
        assert future.done()

    def test_same_date_is_serialized(self, backend):
        """Concurrent recomputes of one date never interleave."""
        backend.insert_raw_events(self.events())
        aggregator = HourlyAggregator(backend, UTC, max_workers=4)
        active = 0
        overlap = []
        guard = threading.Lock()
        original = backend.replace_hourly_aggregates

        def tracking_replace(date, rows):
            nonlocal active
            with guard:
                active += 1
                overlap.append(active)
            try:
                original(date, rows)
            finally:
                with guard:
                    active -= 1

        backend.replace_hourly_aggregates = tracking_replace
        try:
            futures = [aggregator.submit("2025-01-25") for _ in range(8)]
            for future in futures:
                future.result(timeout=10)
        finally:
            aggregator.close()
        assert max(overlap) == 1
        assert len(backend.get_hourly_aggregates("2025-01-25")) == 2

    def test_storage_error_propagates(self, backend):
        backend.insert_raw_events(self.events())
        aggregator = HourlyAggregator(backend, UTC)
        backend.close()
        with pytest.raises(StorageError):
            aggregator.aggregate_date("2025-01-25")
