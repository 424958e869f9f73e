"""Read side: hourly buckets, top apps and range statistics."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from concurrent.futures import Future
from datetime import tzinfo
from functools import partial

from vaulty_usage.aggregate import HourlyAggregator, compute_hourly_aggregates
from vaulty_usage.backend import StorageBackend
from vaulty_usage.models import (
    AppUsageStat,
    DailyUsageStat,
    HourlyAggregate,
    HourlyUsageStat,
    InstalledAppRecord,
    UsageRecord,
    UsageReport,
    UsageSession,
)
from vaulty_usage.sessions import label_sessions, reconstruct_sessions

logger = logging.getLogger(__name__)


def empty_hourly_stats() -> list[HourlyUsageStat]:
    return [HourlyUsageStat(hour=hour, total_duration=0) for hour in range(24)]


def hourly_stats_from_rows(rows: Iterable[HourlyAggregate]) -> list[HourlyUsageStat]:
    """Fold aggregate rows into 24 buckets, apps by total duration descending."""
    apps_by_hour: dict[int, list[AppUsageStat]] = defaultdict(list)
    for row in rows:
        apps_by_hour[row.hour].append(
            AppUsageStat(
                package_name=row.package_name,
                app_name=row.app_name,
                total_duration=row.total_duration,
                usage_count=row.usage_count,
                icon=row.icon,
            )
        )

    stats = []
    for hour in range(24):
        apps = sorted(apps_by_hour[hour], key=lambda a: a.total_duration, reverse=True)
        stats.append(
            HourlyUsageStat(
                hour=hour,
                total_duration=sum(a.total_duration for a in apps),
                apps=apps,
            )
        )
    return stats


def top_apps_from_rows(rows: Iterable[HourlyAggregate], limit: int = 10) -> list[AppUsageStat]:
    """Sum rows per app and return the ``limit`` largest by total duration."""
    totals: dict[str, dict] = {}
    for row in rows:
        entry = totals.setdefault(
            row.package_name,
            {"app_name": row.app_name, "icon": row.icon, "total": 0, "count": 0},
        )
        entry["total"] += row.total_duration
        entry["count"] += row.usage_count

    ranked = sorted(totals.items(), key=lambda item: item[1]["total"], reverse=True)
    return [
        AppUsageStat(
            package_name=package,
            app_name=entry["app_name"],
            total_duration=entry["total"],
            usage_count=entry["count"],
            icon=entry["icon"],
        )
        for package, entry in ranked[:limit]
    ]


def summarize_records(records: Iterable[UsageRecord]) -> list[AppUsageStat]:
    """Per-app totals of usage records, largest total first."""
    totals: dict[str, dict] = {}
    for record in records:
        entry = totals.setdefault(
            record.package_name,
            {"app_name": record.app_name, "icon": record.icon, "total": 0, "count": 0, "last": 0},
        )
        entry["total"] += record.duration
        entry["count"] += 1
        entry["last"] = max(entry["last"], record.end_time)

    ranked = sorted(totals.items(), key=lambda item: item[1]["total"], reverse=True)
    return [
        AppUsageStat(
            package_name=package,
            app_name=entry["app_name"],
            total_duration=entry["total"],
            usage_count=entry["count"],
            last_used=entry["last"],
            icon=entry["icon"],
        )
        for package, entry in ranked
    ]


def build_usage_report(
    sessions: Iterable[UsageSession],
    start_time: int,
    end_time: int,
    apps: Mapping[str, InstalledAppRecord],
    tz: tzinfo | None = None,
) -> UsageReport:
    """Label sessions and summarize them per app (launch count, total time)."""
    records = label_sessions(sorted(sessions, key=lambda s: s.start_time), apps, tz)
    summary = summarize_records(records)
    return UsageReport(
        start_time=start_time,
        end_time=end_time,
        total_usage_time=sum(app.total_duration for app in summary),
        sessions=records,
        apps_summary=summary,
    )


def _report_background_aggregation(date: str, future: Future) -> None:
    if future.cancelled():
        logger.warning("Background aggregation of %s was cancelled", date)
        return
    error = future.exception()
    if error is not None:
        logger.error("Background aggregation of %s failed", date, exc_info=error)


class UsageQueryService:
    """Queries over stored aggregates, with a raw-event fallback.

    The hourly and top-app queries never raise: on a storage failure they
    log and return empty results so the UI can keep rendering.
    """

    def __init__(
        self,
        backend: StorageBackend,
        aggregator: HourlyAggregator | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        self._backend = backend
        self._aggregator = aggregator
        self._tz = tz

    def _rows_for_date(self, date: str) -> list[HourlyAggregate]:
        rows = self._backend.get_hourly_aggregates(date)
        if rows:
            return rows

        events = self._backend.get_raw_events(date=date)
        if not events:
            return []

        apps = {
            app.package_name: app
            for app in self._backend.get_installed_apps(include_deleted=True)
        }
        rows = compute_hourly_aggregates(date, reconstruct_sessions(events), apps, self._tz)
        if self._aggregator is not None:
            logger.info("No aggregates stored for %s, scheduling aggregation", date)
            future = self._aggregator.submit(date)
            future.add_done_callback(partial(_report_background_aggregation, date))
        return rows

    def get_hourly_usage_stats(self, date: str) -> list[HourlyUsageStat]:
        """Return 24 hourly buckets for ``date``; zero-filled when nothing is known."""
        try:
            return hourly_stats_from_rows(self._rows_for_date(date))
        except Exception:
            logger.exception("Failed to load hourly usage for %s", date)
            return empty_hourly_stats()

    def get_daily_top_apps(self, date: str, limit: int = 10) -> list[AppUsageStat]:
        try:
            return top_apps_from_rows(self._rows_for_date(date), limit)
        except Exception:
            logger.exception("Failed to load top apps for %s", date)
            return []

    # Range statistics over usage records

    def get_usage_stats(self, start_date: str, end_date: str) -> list[AppUsageStat]:
        return summarize_records(self._backend.get_usage_records(start_date, end_date))

    def get_daily_usage_stats(self, start_date: str, end_date: str) -> list[DailyUsageStat]:
        by_date: dict[str, list[UsageRecord]] = defaultdict(list)
        for record in self._backend.get_usage_records(start_date, end_date):
            by_date[record.date].append(record)
        return [
            DailyUsageStat(
                date=date,
                total_duration=sum(r.duration for r in records),
                apps=summarize_records(records),
            )
            for date, records in sorted(by_date.items())
        ]

    def get_total_usage_time(self, start_date: str, end_date: str) -> int:
        return sum(r.duration for r in self._backend.get_usage_records(start_date, end_date))

    def get_most_used_apps(
        self, start_date: str, end_date: str, limit: int = 10
    ) -> list[AppUsageStat]:
        return self.get_usage_stats(start_date, end_date)[:limit]

    def check_date_has_data(self, date: str) -> bool:
        if self._backend.get_usage_records(date, date):
            return True
        return bool(self._backend.get_hourly_aggregates(date))

    def get_date_range(self) -> tuple[str, str] | None:
        """First and last dates with usage records, or None when empty."""
        records = self._backend.get_usage_records()
        if not records:
            return None
        dates = [r.date for r in records]
        return min(dates), max(dates)

    def get_total_records_count(self) -> int:
        return self._backend.count_usage_records()

    def get_unique_apps_count(self) -> int:
        return len({r.package_name for r in self._backend.get_usage_records()})
