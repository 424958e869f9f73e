"""Installed app directory with tombstones."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from vaulty_usage.backend import StorageBackend
from vaulty_usage.models import (
    AppInfo,
    DirectorySyncResult,
    InstalledAppRecord,
    InstalledAppStats,
)

logger = logging.getLogger(__name__)

_STRIPPED_PREFIXES = ("com.", "android.", "org.")
_APP_FIELDS = set(AppInfo.model_fields) - {"icon"}

# Matched as substrings of the package name, first hit wins
_SPECIAL_NAMES = {
    "google.android.apps.nexuslauncher": "Nexus Launcher",
    "google.android.gm": "Gmail",
    "google.android.youtube": "YouTube",
    "google.android.apps.maps": "Google Maps",
    "whatsapp": "WhatsApp",
    "instagram.android": "Instagram",
    "facebook.katana": "Facebook",
    "twitter.android": "Twitter",
}


def display_name_for_package(package_name: str) -> str:
    """Derive a readable label from a package name.

    >>> display_name_for_package("com.spotify.music")
    'Spotify Music'
    >>> display_name_for_package("com.google.android.youtube")
    'YouTube'
    """
    for key, name in _SPECIAL_NAMES.items():
        if key in package_name:
            return name

    name = package_name
    for prefix in _STRIPPED_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix):]
    name = " ".join(part[:1].upper() + part[1:] for part in name.split("."))
    return name.strip() or package_name


def resolve_label(
    package_name: str, apps: dict[str, InstalledAppRecord]
) -> tuple[str, str | None]:
    """Return (app_name, icon) for a package, falling back to a derived name."""
    record = apps.get(package_name)
    if record is None:
        return display_name_for_package(package_name), None
    return record.app_name, record.icon


@dataclass
class ReconciliationPlan:
    """Records to upsert and the outcome counts of one reconciliation."""

    records: list[InstalledAppRecord] = field(default_factory=list)
    result: DirectorySyncResult = field(default_factory=DirectorySyncResult)


def plan_reconciliation(
    existing: Iterable[InstalledAppRecord],
    current: Iterable[AppInfo],
    sync_time: int,
) -> ReconciliationPlan:
    """Diff stored records against the current provider list.

    Duplicate package names in ``current`` collapse to the last entry. An
    icon missing from the provider keeps the stored icon.
    """
    stored = {record.package_name: record for record in existing}
    latest: dict[str, AppInfo] = {}
    for app in current:
        latest[app.package_name] = app

    plan = ReconciliationPlan()
    counts = {"inserted": 0, "updated": 0, "resurrected": 0, "tombstoned": 0}

    for package, app in latest.items():
        previous = stored.get(package)
        icon = app.icon
        if icon is None and previous is not None:
            icon = previous.icon
        if previous is None:
            counts["inserted"] += 1
        elif previous.is_deleted:
            counts["resurrected"] += 1
        else:
            counts["updated"] += 1
        plan.records.append(
            InstalledAppRecord(
                **app.model_dump(include=_APP_FIELDS),
                icon=icon,
                is_deleted=False,
                last_sync_time=sync_time,
            )
        )

    for package, previous in stored.items():
        if package in latest or previous.is_deleted:
            continue
        counts["tombstoned"] += 1
        plan.records.append(
            previous.model_copy(update={"is_deleted": True, "last_sync_time": sync_time})
        )

    plan.result = DirectorySyncResult(**counts)
    return plan


class AppDirectory:
    """Installed app records backed by a storage backend."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    def reconcile(self, current: Iterable[AppInfo], sync_time: int) -> DirectorySyncResult:
        """Apply the current app list in one transaction and return the counts."""
        existing = self._backend.get_installed_apps(include_deleted=True)
        plan = plan_reconciliation(existing, current, sync_time)
        if plan.records:
            self._backend.apply_directory_changes(plan.records)
        logger.info(
            "App directory: %d inserted, %d updated, %d resurrected, %d tombstoned",
            plan.result.inserted,
            plan.result.updated,
            plan.result.resurrected,
            plan.result.tombstoned,
        )
        return plan.result

    def active_apps(self) -> list[InstalledAppRecord]:
        return self._backend.get_installed_apps()

    def get_app(self, package_name: str) -> InstalledAppRecord | None:
        return self._backend.get_installed_app(package_name)

    def snapshot(self) -> dict[str, InstalledAppRecord]:
        """All records, tombstones included, keyed by package name."""
        return {
            record.package_name: record
            for record in self._backend.get_installed_apps(include_deleted=True)
        }

    def stats(self) -> InstalledAppStats:
        records = self._backend.get_installed_apps(include_deleted=True)
        live = [r for r in records if not r.is_deleted]
        system = sum(1 for r in live if r.is_system_app)
        return InstalledAppStats(
            total_apps=len(live),
            system_apps=system,
            user_apps=len(live) - system,
            deleted_apps=len(records) - len(live),
        )
