"""Hourly pre-aggregation of reconstructed sessions."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import tzinfo

from vaulty_usage.backend import StorageBackend
from vaulty_usage.directory import resolve_label
from vaulty_usage.models import HourlyAggregate, InstalledAppRecord, UsageSession
from vaulty_usage.sessions import reconstruct_sessions
from vaulty_usage.timeutil import HOUR_MS, hour_floor, local_date, local_hour

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HourSlice:
    """The part of a session that falls in one local clock hour."""

    date: str
    hour: int
    duration: int


def _slice(ts: int, duration: int, tz: tzinfo | None) -> HourSlice:
    return HourSlice(local_date(ts, tz), local_hour(ts, tz), duration)


def split_session(session: UsageSession, tz: tzinfo | None = None) -> list[HourSlice]:
    """Split a session at local hour boundaries.

    A session inside one hour yields one slice with its full duration.
    Otherwise the start slice runs to the end of the start hour, every hour
    in between gets a full hour, and the end slice runs from the start of
    the end hour (omitted when empty). Slice durations sum to the session
    duration.
    """
    if session.duration <= 0:
        return []

    start_floor = hour_floor(session.start_time, tz)
    end_floor = hour_floor(session.end_time, tz)
    if start_floor == end_floor:
        return [_slice(session.start_time, session.duration, tz)]

    cursor = start_floor + HOUR_MS
    slices = [_slice(session.start_time, cursor - session.start_time, tz)]
    while cursor < end_floor:
        slices.append(_slice(cursor, HOUR_MS, tz))
        cursor += HOUR_MS
    if session.end_time > end_floor:
        slices.append(_slice(end_floor, session.end_time - end_floor, tz))
    return slices


def compute_hourly_aggregates(
    date: str,
    sessions: Iterable[UsageSession],
    apps: Mapping[str, InstalledAppRecord],
    tz: tzinfo | None = None,
) -> list[HourlyAggregate]:
    """Sum session slices into one row per (hour, package) of ``date``.

    Each slice counts as one use of its hour. Slices on other dates are
    ignored. Rows are ordered by hour, then total duration descending.
    """
    totals: dict[tuple[int, str], list[int]] = defaultdict(lambda: [0, 0])
    for session in sessions:
        for piece in split_session(session, tz):
            if piece.date != date:
                continue
            bucket = totals[(piece.hour, session.package_name)]
            bucket[0] += piece.duration
            bucket[1] += 1

    rows = []
    for (hour, package), (total, count) in totals.items():
        app_name, icon = resolve_label(package, apps)
        rows.append(
            HourlyAggregate(
                date=date,
                hour=hour,
                package_name=package,
                app_name=app_name,
                total_duration=total,
                usage_count=count,
                icon=icon,
            )
        )
    rows.sort(key=lambda r: (r.hour, -r.total_duration, r.package_name))
    return rows


class HourlyAggregator:
    """Recomputes and stores the hourly aggregates of a date.

    Work for one date is serialized by an in-process lock keyed by date;
    different dates may run concurrently on the worker pool.
    """

    def __init__(
        self,
        backend: StorageBackend,
        tz: tzinfo | None = None,
        max_workers: int = 2,
    ) -> None:
        self._backend = backend
        self._tz = tz
        self._max_workers = max_workers
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    def _lock_for(self, date: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(date, threading.Lock())

    def aggregate_date(self, date: str) -> list[HourlyAggregate]:
        """Replace the stored aggregates of ``date`` from its raw events.

        Pending resumes at the end of the day are dropped. A date without
        raw events is left untouched.

        Returns:
            The rows written, or an empty list when the date was skipped.

        Raises:
            StorageError: If reading or writing storage fails.
        """
        with self._lock_for(date):
            events = self._backend.get_raw_events(date=date)
            if not events:
                logger.info("No raw events for %s, keeping existing aggregates", date)
                return []

            sessions = reconstruct_sessions(events)
            apps = {
                app.package_name: app
                for app in self._backend.get_installed_apps(include_deleted=True)
            }
            rows = compute_hourly_aggregates(date, sessions, apps, self._tz)
            self._backend.replace_hourly_aggregates(date, rows)
            logger.info(
                "Aggregated %s: %d sessions into %d hourly rows", date, len(sessions), len(rows)
            )
            return rows

    def submit(self, date: str) -> Future[list[HourlyAggregate]]:
        """Run ``aggregate_date`` on a worker thread."""
        with self._locks_guard:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="aggregate"
                )
            executor = self._executor
        return executor.submit(self.aggregate_date, date)

    def close(self) -> None:
        """Wait for submitted work and stop the worker pool."""
        with self._locks_guard:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
