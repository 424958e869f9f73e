"""Retention: drop old raw events, usage rows and stale tombstones."""

from __future__ import annotations

import logging
from datetime import tzinfo

from vaulty_usage.backend import StorageBackend
from vaulty_usage.config import Settings
from vaulty_usage.models import MaintenanceResult
from vaulty_usage.timeutil import DAY_MS, local_date, shift_date

logger = logging.getLogger(__name__)


def run_maintenance(
    backend: StorageBackend,
    settings: Settings,
    *,
    now: int,
    tz: tzinfo | None = None,
) -> MaintenanceResult:
    """Apply the configured retention windows. Safe to run repeatedly.

    Date cutoffs never pass the checkpoint date, so days the sync has not
    processed yet are kept. Without a checkpoint raw events are not touched.
    Tombstones are purged last, after the usage rows that might reference
    them.
    """
    today = local_date(now, tz)
    checkpoint = backend.get_checkpoint()
    checkpoint_date = local_date(checkpoint, tz) if checkpoint is not None else None

    def cutoff(days: int) -> str:
        date = shift_date(today, -days)
        if checkpoint_date is not None and checkpoint_date < date:
            return checkpoint_date
        return date

    raw_deleted = 0
    if checkpoint_date is not None:
        raw_deleted = backend.delete_raw_events_before(cutoff(settings.raw_retention_days))

    aggregate_cutoff = cutoff(settings.aggregate_retention_days)
    records_deleted = backend.delete_usage_records_before(aggregate_cutoff)
    hourly_deleted = backend.delete_hourly_aggregates_before(aggregate_cutoff)
    purged = backend.purge_deleted_apps(now - settings.tombstone_grace_days * DAY_MS)

    result = MaintenanceResult(
        raw_events_deleted=raw_deleted,
        hourly_aggregates_deleted=hourly_deleted,
        usage_records_deleted=records_deleted,
        apps_purged=purged,
    )
    logger.info(
        "Maintenance: %d raw events, %d usage records, %d hourly rows, %d apps removed",
        raw_deleted,
        records_deleted,
        hourly_deleted,
        purged,
    )
    return result
