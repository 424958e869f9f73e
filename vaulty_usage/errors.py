"""Exception types for storage, providers and sync cycles."""

from __future__ import annotations

from vaulty_usage.models import SyncStage


class UsageError(Exception):
    """Base exception for usage pipeline errors."""

    pass


class StorageError(UsageError):
    """Raised when storage is unavailable or rejects a write.

    The failed transaction has been rolled back when this is raised.
    """

    pass


class ProviderError(UsageError):
    """Raised when an event or app-directory provider fails."""

    pass


class SyncError(UsageError):
    """Base exception for a failed sync cycle.

    Attributes:
        stage: The stage that was running when the cycle stopped.
    """

    def __init__(self, stage: SyncStage, message: str) -> None:
        super().__init__(message)
        self.stage = stage


class PermissionDenied(SyncError):
    """Raised when usage access has not been granted. Not retried."""

    def __init__(self, stage: SyncStage = SyncStage.CHECKING_PERMISSION) -> None:
        super().__init__(stage, "Usage access permission not granted")


class TransientIOFailure(SyncError):
    """Raised when a provider or storage call fails mid-cycle.

    The checkpoint is unchanged, so the whole cycle is safe to retry.
    """

    pass


class SyncCancelled(SyncError):
    """Raised when the caller abandons a cycle at a stage boundary."""

    def __init__(self, stage: SyncStage) -> None:
        super().__init__(stage, f"Sync cancelled before {stage.value}")
