"""Reconstruct foreground sessions from RESUMED/PAUSED transitions."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import tzinfo

from vaulty_usage.directory import resolve_label
from vaulty_usage.models import (
    EventType,
    InstalledAppRecord,
    ProviderEvent,
    UsageRecord,
    UsageSession,
)
from vaulty_usage.timeutil import local_date

logger = logging.getLogger(__name__)


def reconstruct_sessions(
    events: Iterable[ProviderEvent],
    *,
    close_pending_at: int | None = None,
    min_duration_ms: int = 0,
) -> list[UsageSession]:
    """Pair RESUMED/PAUSED events into sessions.

    Events are processed in timestamp order (stable for ties). A RESUMED for
    a package that already has a pending resume replaces it, so the last
    resume wins. A PAUSED closes the pending resume for its package; the
    pending entry is cleared even when the resulting session is discarded.

    Args:
        events: Transition events in any order.
        close_pending_at: When given, resumes still open at the end of the
            input are closed at this timestamp. Otherwise they are dropped.
        min_duration_ms: Sessions must last strictly longer than this.

    Returns:
        Sessions ordered by start time. Never raises on malformed input.
    """
    pending: dict[str, int] = {}
    sessions: list[UsageSession] = []
    unmatched = 0
    discarded = 0

    def emit(package: str, start: int, end: int) -> None:
        nonlocal discarded
        if end - start > min_duration_ms and end > start:
            sessions.append(UsageSession(package, start, end))
        else:
            discarded += 1

    for event in sorted(events, key=lambda e: e.timestamp):
        if event.event_type == EventType.RESUMED:
            pending[event.package_name] = event.timestamp
        elif event.event_type == EventType.PAUSED:
            start = pending.pop(event.package_name, None)
            if start is None:
                unmatched += 1
                continue
            emit(event.package_name, start, event.timestamp)

    if close_pending_at is not None:
        for package, start in pending.items():
            emit(package, start, close_pending_at)
    elif pending:
        logger.debug("Dropping %d pending resumes at end of window", len(pending))

    if unmatched or discarded:
        logger.debug(
            "Ignored %d unmatched pauses and %d empty sessions", unmatched, discarded
        )

    sessions.sort(key=lambda s: s.start_time)
    return sessions


def label_sessions(
    sessions: Iterable[UsageSession],
    apps: Mapping[str, InstalledAppRecord],
    tz: tzinfo | None = None,
) -> list[UsageRecord]:
    """Turn sessions into usage records dated by their local start day."""
    records = []
    for session in sessions:
        app_name, icon = resolve_label(session.package_name, apps)
        records.append(
            UsageRecord(
                package_name=session.package_name,
                app_name=app_name,
                start_time=session.start_time,
                end_time=session.end_time,
                duration=session.duration,
                date=local_date(session.start_time, tz),
                icon=icon,
            )
        )
    return records
