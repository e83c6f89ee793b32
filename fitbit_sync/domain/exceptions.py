"""Custom exception hierarchy for the sync engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover - import for type checking only
    from fitbit_sync.domain.metrics import MetricKind


class SyncError(Exception):
    """Base exception for every failure surfaced by the engine.

    ``metric`` is filled in by the orchestrator when the failure happened while
    a specific metric was being synchronised.
    """

    def __init__(self, message: str, *, metric: "Optional[MetricKind]" = None) -> None:
        super().__init__(message)
        self.metric = metric

    def describe(self) -> str:
        """Human-readable message including the metric context when known."""
        if self.metric is None:
            return str(self)
        return f"{self.metric.label}: {self}"


class AuthError(SyncError):
    """Raised when the Fitbit credential lifecycle cannot produce a token."""


class NotConnected(AuthError):
    """No stored token set; the user has to connect first."""


class AuthExchangeFailed(AuthError):
    """The interactive authorization or the code exchange failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RefreshFailed(AuthError):
    """The token endpoint rejected the refresh. Terminal for the current run."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteAPIError(SyncError):
    """A Fitbit Web API call failed."""

    def __init__(self, path: str, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        detail = message or (f"HTTP {status_code}" if status_code is not None else "request failed")
        super().__init__(f"Fitbit API call failed: {path} ({detail})")
        self.path = path
        self.status_code = status_code


class DestinationAuthError(SyncError):
    """The destination store denied, or cannot evaluate, the write grant."""


class DestinationWriteError(SyncError):
    """A single destination write failed."""

    def __init__(self, message: str, *, idempotency_key: Optional[str] = None) -> None:
        super().__init__(message)
        self.idempotency_key = idempotency_key


class AlreadyRunning(SyncError):
    """A run is already in progress on this orchestrator."""


class SyncCancelled(SyncError):
    """The caller cancelled the run (for example a background deadline expired)."""


class StateStoreError(SyncError):
    """Local sync state or token material could not be persisted."""


__all__ = [
    "AlreadyRunning",
    "AuthError",
    "AuthExchangeFailed",
    "DestinationAuthError",
    "DestinationWriteError",
    "NotConnected",
    "RefreshFailed",
    "RemoteAPIError",
    "StateStoreError",
    "SyncCancelled",
    "SyncError",
]
