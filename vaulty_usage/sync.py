"""Sync coordinator: one incremental ingestion cycle, end to end."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any

from vaulty_usage.aggregate import HourlyAggregator
from vaulty_usage.backend import StorageBackend
from vaulty_usage.config import Settings
from vaulty_usage.directory import AppDirectory
from vaulty_usage.errors import (
    PermissionDenied,
    SyncCancelled,
    SyncError,
    TransientIOFailure,
    UsageError,
)
from vaulty_usage.models import RawEvent, SyncResult, SyncStage
from vaulty_usage.providers import AppDirectoryProvider, EventProvider
from vaulty_usage.sessions import label_sessions, reconstruct_sessions
from vaulty_usage.timeutil import now_ms

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Drives fetch, persist, reconstruct and aggregate for one window.

    The window is ``[checkpoint, now)`` with ``now`` captured when the cycle
    starts. The checkpoint only moves after every stage succeeded, so a
    failed cycle can be rerun as a whole. Cycles are serialized.
    """

    def __init__(
        self,
        backend: StorageBackend,
        event_provider: EventProvider,
        app_provider: AppDirectoryProvider | None = None,
        *,
        directory: AppDirectory | None = None,
        aggregator: HourlyAggregator | None = None,
        settings: Settings | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._backend = backend
        self._events = event_provider
        self._apps = app_provider
        self._settings = settings or Settings()
        self._tz = self._settings.tzinfo
        self._directory = directory or AppDirectory(backend)
        self._aggregator = aggregator or HourlyAggregator(
            backend, self._settings.tzinfo, self._settings.aggregation_workers
        )
        self._clock = clock or now_ms
        self._cycle_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._stage = SyncStage.IDLE
        self._executor: ThreadPoolExecutor | None = None
        self._executor_guard = threading.Lock()

    @property
    def stage(self) -> SyncStage:
        return self._stage

    def cancel(self) -> None:
        """Abandon the running cycle at its next stage boundary."""
        self._cancel_event.set()

    @contextmanager
    def _stage_scope(self, stage: SyncStage) -> Iterator[None]:
        if self._cancel_event.is_set():
            raise SyncCancelled(stage)
        self._stage = stage
        logger.debug("Sync stage: %s", stage.value)
        try:
            yield
        except SyncError:
            raise
        except (UsageError, OSError) as e:
            raise TransientIOFailure(stage, f"{stage.value} failed: {e}") from e
        except Exception as e:
            # Protocol implementations may raise anything
            logger.exception("Unexpected error during %s", stage.value)
            raise TransientIOFailure(stage, f"{stage.value} failed: {e!r}") from e

    def run_cycle(self) -> SyncResult:
        """Run one cycle.

        Raises:
            PermissionDenied: If usage access is not granted.
            TransientIOFailure: If a provider or storage call failed.
            SyncCancelled: If ``cancel()`` was called during the cycle.
        """
        with self._cycle_lock:
            self._cancel_event.clear()
            try:
                return self._run({})
            finally:
                self._stage = SyncStage.IDLE

    def sync_now(self) -> SyncResult:
        """Run one cycle and report failure in the result instead of raising."""
        progress: dict[str, Any] = {}
        with self._cycle_lock:
            self._cancel_event.clear()
            try:
                return self._run(progress)
            except SyncError as e:
                logger.warning("Sync failed at %s: %s", e.stage.value, e)
                return SyncResult(
                    success=False, failed_stage=e.stage, error=str(e), **progress
                )
            finally:
                self._stage = SyncStage.IDLE

    def submit(self) -> Future[SyncResult]:
        """Run ``sync_now`` on a worker thread."""
        with self._executor_guard:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync")
            executor = self._executor
        return executor.submit(self.sync_now)

    def close(self) -> None:
        with self._executor_guard:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def _run(self, progress: dict[str, Any]) -> SyncResult:
        now = self._clock()
        progress["started_at"] = now

        with self._stage_scope(SyncStage.CHECKING_PERMISSION):
            if not self._events.has_permission():
                raise PermissionDenied()

        with self._stage_scope(SyncStage.SYNCING_APP_DIRECTORY):
            if self._apps is not None:
                current = self._apps.get_installed_apps(self._settings.include_icons)
                progress["directory"] = self._directory.reconcile(current, now)

        with self._stage_scope(SyncStage.FETCHING_EVENTS):
            checkpoint = self._backend.get_checkpoint()
            if checkpoint is None:
                window_start = now - self._settings.initial_lookback_ms
            else:
                window_start = checkpoint
            progress["window_start"] = window_start
            progress["window_end"] = now
            fetched = [
                e
                for e in self._events.query_events(window_start, now)
                if window_start <= e.timestamp < now
            ]
            progress["events_fetched"] = len(fetched)

        with self._stage_scope(SyncStage.PERSISTING_RAW):
            raw = [RawEvent.from_event(e, self._tz) for e in fetched]
            progress["raw_inserted"] = self._backend.insert_raw_events(raw)
            dates = sorted({e.date for e in raw})

        with self._stage_scope(SyncStage.RECONSTRUCTING_SESSIONS):
            # Whole touched days, so pairs split by the previous checkpoint still match
            sessions = []
            for date in dates:
                sessions.extend(reconstruct_sessions(self._backend.get_raw_events(date=date)))
            progress["sessions"] = len(sessions)

        with self._stage_scope(SyncStage.PERSISTING_USAGE_RECORDS):
            records = label_sessions(sessions, self._directory.snapshot(), self._tz)
            progress["records_inserted"] = self._backend.insert_usage_records(records)

        with self._stage_scope(SyncStage.AGGREGATING_HOURLY):
            aggregated = []
            for date in dates:
                self._aggregator.aggregate_date(date)
                aggregated.append(date)
                progress["dates_aggregated"] = list(aggregated)

        with self._stage_scope(SyncStage.ADVANCING_CHECKPOINT):
            self._backend.set_checkpoint(now)

        logger.info(
            "Sync complete: %d events fetched, %d new, %d sessions, %d dates aggregated",
            progress["events_fetched"],
            progress["raw_inserted"],
            progress["sessions"],
            len(dates),
        )
        return SyncResult(success=True, **progress)
