"""Builders and fakes shared by the test modules."""

from __future__ import annotations

from datetime import datetime, timezone

from vaulty_usage.errors import ProviderError
from vaulty_usage.models import AppInfo, EventType, ProviderEvent, RawEvent

UTC = timezone.utc


def ms(value: str) -> int:
    """Epoch milliseconds of a naive ISO timestamp read as UTC."""
    return int(datetime.fromisoformat(value).replace(tzinfo=UTC).timestamp() * 1000)


def resumed(package: str, timestamp: int, class_name: str | None = None) -> ProviderEvent:
    return ProviderEvent(
        package_name=package,
        timestamp=timestamp,
        event_type=EventType.RESUMED,
        class_name=class_name,
    )


def paused(package: str, timestamp: int, class_name: str | None = None) -> ProviderEvent:
    return ProviderEvent(
        package_name=package,
        timestamp=timestamp,
        event_type=EventType.PAUSED,
        class_name=class_name,
    )


def raw(event: ProviderEvent) -> RawEvent:
    return RawEvent.from_event(event, UTC)


def make_app(package: str, name: str | None = None, **kwargs) -> AppInfo:
    return AppInfo(package_name=package, app_name=name or package.rsplit(".", 1)[-1], **kwargs)


class FakeProvider:
    """In-memory event and app-directory provider."""

    def __init__(
        self,
        events: list[ProviderEvent] | None = None,
        apps: list[AppInfo] | None = None,
        permission: bool = True,
    ) -> None:
        self.events = list(events or [])
        self.apps = list(apps or [])
        self.permission = permission
        self.fail_events = False
        self.fail_apps = False
        self.queries: list[tuple[int, int]] = []
        self.permission_requests = 0

    def query_events(self, start_time: int, end_time: int) -> list[ProviderEvent]:
        self.queries.append((start_time, end_time))
        if self.fail_events:
            raise ProviderError("event source unavailable")
        # Like the OS API, return everything overlapping loosely; callers filter
        return [e for e in self.events if start_time - 1000 <= e.timestamp <= end_time]

    def has_permission(self) -> bool:
        return self.permission

    def request_permission(self) -> bool:
        self.permission_requests += 1
        return self.permission

    def get_installed_apps(self, include_icons: bool = False) -> list[AppInfo]:
        if self.fail_apps:
            raise ProviderError("package manager unavailable")
        return list(self.apps)


class Clock:
    """Settable clock returning epoch milliseconds."""

    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now
