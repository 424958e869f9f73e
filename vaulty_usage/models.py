"""Data model for usage ingestion and aggregation.

Wire and storage models are pydantic models. Field names are snake_case in
Python and camelCase on the wire (``packageName``, ``totalDuration``), which
is what the device-side exporter emits.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import tzinfo
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from vaulty_usage.timeutil import local_date


class EventType(str, Enum):
    RESUMED = "ACTIVITY_RESUMED"
    PAUSED = "ACTIVITY_PAUSED"


class SyncStage(str, Enum):
    """States of one sync cycle, in execution order."""

    IDLE = "idle"
    CHECKING_PERMISSION = "checking_permission"
    SYNCING_APP_DIRECTORY = "syncing_app_directory"
    FETCHING_EVENTS = "fetching_events"
    PERSISTING_RAW = "persisting_raw"
    RECONSTRUCTING_SESSIONS = "reconstructing_sessions"
    PERSISTING_USAGE_RECORDS = "persisting_usage_records"
    AGGREGATING_HOURLY = "aggregating_hourly"
    ADVANCING_CHECKPOINT = "advancing_checkpoint"


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class ProviderEvent(_Model):
    """A foreground transition as reported by the event provider."""

    package_name: str
    timestamp: int
    event_type: EventType
    class_name: str | None = None


class RawEvent(ProviderEvent):
    """A persisted transition event with its derived local date."""

    date: str

    @classmethod
    def from_event(cls, event: ProviderEvent, tz: tzinfo | None = None) -> RawEvent:
        return cls(
            package_name=event.package_name,
            timestamp=event.timestamp,
            event_type=event.event_type,
            class_name=event.class_name,
            date=local_date(event.timestamp, tz),
        )

    def compute_id(self) -> str:
        """Compute a deterministic ID from the event content.

        Two provider reports of the same transition map to the same ID, so
        re-ingesting a window does not duplicate rows.
        """
        content = "|".join([
            self.package_name,
            str(self.timestamp),
            self.event_type.value,
            self.class_name or "",
        ])
        return hashlib.sha256(content.encode()).hexdigest()[:32]


@dataclass(frozen=True)
class UsageSession:
    """A reconstructed contiguous foreground interval."""

    package_name: str
    start_time: int
    end_time: int

    @property
    def duration(self) -> int:
        return self.end_time - self.start_time


class UsageRecord(_Model):
    """A session persisted with its display label and start date."""

    package_name: str
    app_name: str
    start_time: int
    end_time: int
    duration: int
    date: str
    icon: str | None = None


class HourlyAggregate(_Model):
    date: str
    hour: int = Field(ge=0, le=23)
    package_name: str
    app_name: str
    total_duration: int
    usage_count: int
    icon: str | None = None


class AppInfo(_Model):
    """An installed app as reported by the app-directory provider."""

    package_name: str
    app_name: str
    version_name: str | None = None
    version_code: int = 0
    first_install_time: int = 0
    last_update_time: int = 0
    is_system_app: bool = False
    icon: str | None = None


class InstalledAppRecord(AppInfo):
    is_deleted: bool = False
    last_sync_time: int


class AppUsageStat(_Model):
    package_name: str
    app_name: str
    total_duration: int
    usage_count: int
    last_used: int = 0
    icon: str | None = None


class HourlyUsageStat(_Model):
    hour: int
    total_duration: int
    apps: list[AppUsageStat] = Field(default_factory=list)


class DailyUsageStat(_Model):
    date: str
    total_duration: int
    apps: list[AppUsageStat] = Field(default_factory=list)


class UsageReport(_Model):
    start_time: int
    end_time: int
    total_usage_time: int
    sessions: list[UsageRecord] = Field(default_factory=list)
    apps_summary: list[AppUsageStat] = Field(default_factory=list)


class InstalledAppStats(_Model):
    total_apps: int
    system_apps: int
    user_apps: int
    deleted_apps: int


class DirectorySyncResult(_Model):
    inserted: int = 0
    updated: int = 0
    resurrected: int = 0
    tombstoned: int = 0


class SyncResult(_Model):
    """Outcome of one sync cycle."""

    success: bool
    started_at: int | None = None
    window_start: int | None = None
    window_end: int | None = None
    events_fetched: int = 0
    raw_inserted: int = 0
    sessions: int = 0
    records_inserted: int = 0
    dates_aggregated: list[str] = Field(default_factory=list)
    directory: DirectorySyncResult | None = None
    failed_stage: SyncStage | None = None
    error: str | None = None


class MaintenanceResult(_Model):
    raw_events_deleted: int = 0
    hourly_aggregates_deleted: int = 0
    usage_records_deleted: int = 0
    apps_purged: int = 0
