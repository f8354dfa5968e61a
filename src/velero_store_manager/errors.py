from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import NFSConfig


class SnapshotStoreError(RuntimeError):
    """Base class for failures surfaced by the snapshot storage lifecycle."""


class ValidationError(SnapshotStoreError, ValueError):
    """Raised for malformed cron, retention or provider fields. Never retried."""


class ConflictError(SnapshotStoreError):
    """Raised when the self-hosted backend would be moved to a different NFS share."""

    def __init__(self, *, desired: NFSConfig, current: NFSConfig) -> None:
        super().__init__(_conflict_message(desired=desired, current=current))
        self.desired = desired
        self.current = current


class TransientInfrastructureError(SnapshotStoreError):
    """Raised when a cluster API read fails during detection."""


class FatalInstallError(SnapshotStoreError):
    def __init__(self, *, stage: str, reason: str, partially_applied: bool = False) -> None:
        normalized_reason = reason.strip() or "unknown error"
        message = f"{stage} stage failed: {normalized_reason}"
        if partially_applied:
            message = f"{message} (changes were partially applied)"
        super().__init__(message)
        self.stage = stage
        self.partially_applied = partially_applied


class ReadinessTimeoutError(TimeoutError):
    """Raised when workloads did not report ready in time. They may still converge."""


def _conflict_message(*, desired: NFSConfig, current: NFSConfig) -> str:
    mismatches: list[str] = []
    if desired.server != current.server:
        mismatches.append(f"server '{current.server}' -> '{desired.server}'")
    if desired.path != current.path:
        mismatches.append(f"path '{current.path}' -> '{desired.path}'")
    detail = ", ".join(mismatches) or "share settings differ"
    return (
        f"The snapshot storage backend is already configured against NFS share "
        f"{current.server}:{current.path} ({detail}). Proceeding will reset it to use "
        f"{desired.server}:{desired.path}; credentials issued for the previous backend will stop working. "
        "Confirm and retry with a forced reset to continue."
    )
