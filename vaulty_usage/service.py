"""Persistence context wiring storage, providers, sync and queries together."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from typing import Any

from vaulty_usage.aggregate import HourlyAggregator
from vaulty_usage.backend import StorageBackend
from vaulty_usage.config import Settings
from vaulty_usage.db import SqliteBackend
from vaulty_usage.directory import AppDirectory
from vaulty_usage.errors import ProviderError, UsageError
from vaulty_usage.maintenance import run_maintenance
from vaulty_usage.memory import MemoryBackend
from vaulty_usage.models import (
    AppUsageStat,
    DailyUsageStat,
    HourlyUsageStat,
    InstalledAppRecord,
    InstalledAppStats,
    MaintenanceResult,
    ProviderEvent,
    RawEvent,
    SyncResult,
    UsageReport,
)
from vaulty_usage.providers import AppDirectoryProvider, CommandProvider, EventProvider
from vaulty_usage.query import UsageQueryService, build_usage_report
from vaulty_usage.sessions import label_sessions, reconstruct_sessions
from vaulty_usage.sync import SyncCoordinator
from vaulty_usage.timeutil import now_ms

logger = logging.getLogger(__name__)


def open_backend(settings: Settings) -> StorageBackend:
    if settings.backend == "memory":
        return MemoryBackend()
    return SqliteBackend.open(settings.db_path)


class UsageService:
    """Entry point for callers such as the CLI or a UI layer.

    Owns the backend and everything built on it; close it (or use it as a
    context manager) to stop worker threads and release storage.
    """

    def __init__(
        self,
        backend: StorageBackend,
        *,
        event_provider: EventProvider | None = None,
        app_provider: AppDirectoryProvider | None = None,
        settings: Settings | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.backend = backend
        self._tz = self.settings.tzinfo
        self._clock = clock or now_ms
        self._events = event_provider
        self.directory = AppDirectory(backend)
        self.aggregator = HourlyAggregator(
            backend, self._tz, max_workers=self.settings.aggregation_workers
        )
        self.query = UsageQueryService(backend, self.aggregator, self._tz)
        self.coordinator: SyncCoordinator | None = None
        if event_provider is not None:
            self.coordinator = SyncCoordinator(
                backend,
                event_provider,
                app_provider,
                directory=self.directory,
                aggregator=self.aggregator,
                settings=self.settings,
                clock=self._clock,
            )

    @classmethod
    def open(cls, settings: Settings | None = None, **kwargs: Any) -> UsageService:
        """Open the configured backend.

        A configured provider command is used for both providers unless
        providers are passed explicitly.
        """
        if settings is None:
            settings = Settings()
        if settings.provider_command and "event_provider" not in kwargs:
            provider = CommandProvider(settings.provider_command, settings.provider_timeout)
            kwargs["event_provider"] = provider
            kwargs.setdefault("app_provider", provider)
        return cls(open_backend(settings), settings=settings, **kwargs)

    def __enter__(self) -> UsageService:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        if self.coordinator is not None:
            self.coordinator.close()
        self.aggregator.close()
        self.backend.close()

    # Sync

    def sync_now(self) -> SyncResult:
        if self.coordinator is None:
            return SyncResult(success=False, error="No event provider configured")
        return self.coordinator.sync_now()

    def submit_sync(self) -> Future[SyncResult]:
        if self.coordinator is None:
            raise UsageError("No event provider configured")
        return self.coordinator.submit()

    def request_permission(self) -> bool:
        if self._events is None:
            return False
        try:
            return self._events.request_permission()
        except ProviderError as e:
            logger.warning("Permission request failed: %s", e)
            return False

    def ingest_events(self, events: Iterable[ProviderEvent]) -> tuple[int, list[str]]:
        """Store events from outside a sync cycle and refresh the days they touch.

        The checkpoint is not moved.

        Returns:
            Tuple of (events inserted, dates re-aggregated).
        """
        raw = [RawEvent.from_event(e, self._tz) for e in events]
        inserted = self.backend.insert_raw_events(raw)
        dates = sorted({e.date for e in raw})
        apps = self.directory.snapshot()
        for date in dates:
            sessions = reconstruct_sessions(self.backend.get_raw_events(date=date))
            self.backend.insert_usage_records(label_sessions(sessions, apps, self._tz))
            self.aggregator.aggregate_date(date)
        return inserted, dates

    def aggregate_dates(self, dates: Iterable[str]) -> dict[str, int]:
        """Recompute aggregates now; returns rows written per date."""
        return {date: len(self.aggregator.aggregate_date(date)) for date in dates}

    def get_usage_report(self, start_time: int, end_time: int) -> UsageReport | None:
        """Build a live report straight from the provider.

        Resumes still open are closed at the current time. Returns None when
        no provider is configured, access is not granted, or the provider fails.
        """
        if self._events is None:
            return None
        try:
            if not self._events.has_permission():
                return None
            events = self._events.query_events(start_time, end_time)
        except ProviderError as e:
            logger.warning("Failed to get usage report: %s", e)
            return None

        sessions = reconstruct_sessions(
            events,
            close_pending_at=self._clock(),
            min_duration_ms=self.settings.live_min_session_ms,
        )
        return build_usage_report(
            sessions, start_time, end_time, self.directory.snapshot(), self._tz
        )

    def run_maintenance(self, now: int | None = None) -> MaintenanceResult:
        return run_maintenance(
            self.backend,
            self.settings,
            now=self._clock() if now is None else now,
            tz=self._tz,
        )

    # Queries

    def get_hourly_usage_stats(self, date: str) -> list[HourlyUsageStat]:
        return self.query.get_hourly_usage_stats(date)

    def get_daily_top_apps(self, date: str, limit: int = 10) -> list[AppUsageStat]:
        return self.query.get_daily_top_apps(date, limit)

    def get_usage_stats(self, start_date: str, end_date: str) -> list[AppUsageStat]:
        return self.query.get_usage_stats(start_date, end_date)

    def get_daily_usage_stats(self, start_date: str, end_date: str) -> list[DailyUsageStat]:
        return self.query.get_daily_usage_stats(start_date, end_date)

    def get_total_usage_time(self, start_date: str, end_date: str) -> int:
        return self.query.get_total_usage_time(start_date, end_date)

    def get_most_used_apps(
        self, start_date: str, end_date: str, limit: int = 10
    ) -> list[AppUsageStat]:
        return self.query.get_most_used_apps(start_date, end_date, limit)

    def check_date_has_data(self, date: str) -> bool:
        return self.query.check_date_has_data(date)

    def get_date_range(self) -> tuple[str, str] | None:
        return self.query.get_date_range()

    def get_total_records_count(self) -> int:
        return self.query.get_total_records_count()

    def get_unique_apps_count(self) -> int:
        return self.query.get_unique_apps_count()

    def clear_usage_data(self, start_date: str, end_date: str) -> int:
        """Delete usage records dated within the range, inclusive."""
        deleted = self.backend.delete_usage_records(start_date, end_date)
        logger.info("Cleared %d usage records from %s to %s", deleted, start_date, end_date)
        return deleted

    # Installed apps

    def get_installed_app_stats(self) -> InstalledAppStats:
        return self.directory.stats()

    def get_active_apps(self) -> list[InstalledAppRecord]:
        return self.directory.active_apps()

    def get_installed_app(self, package_name: str) -> InstalledAppRecord | None:
        return self.directory.get_app(package_name)
