"""
Scheduling helpers around the sync orchestrator.

The orchestrator itself never retries. This module wraps a run with bounded
retries for transient failures, an optional background deadline that cancels
the run cooperatively, and a simple interval loop for unattended use.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
    wait_random,
)

from fitbit_sync.application.orchestrator import SyncOrchestrator
from fitbit_sync.domain.exceptions import DestinationWriteError, RemoteAPIError, SyncError
from fitbit_sync.domain.metrics import MetricKind, SyncIntervalHours, SyncRunResult
from fitbit_sync.domain.strategies import raise_if_cancelled
from fitbit_sync.infrastructure import log_utils

DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY_SECS = 60

# Only failures that may succeed on a later attempt are retried.
TRANSIENT_ERRORS = (RemoteAPIError, DestinationWriteError)

T = TypeVar("T")


@dataclass
class SyncOutcome:
    """Aggregate outcome of a sync run after retries complete."""

    success: bool
    attempts: int
    label: str
    result: Optional[SyncRunResult] = None
    error: Optional[SyncError] = None

    @property
    def written_count(self) -> int:
        return self.result.written_count if self.result else 0

    def summary_line(self) -> str:
        verdict = "success" if self.success else "failed"
        line = f"Sync summary: run={self.label} | attempts={self.attempts} | result={verdict}"
        if self.result is not None:
            details = ", ".join(self.result.details) or "no metrics enabled"
            line += f" | written={self.result.written_count} | {details}"
        if self.error is not None:
            line += f" | error={self.error.describe()}"
        return line

    def log_level(self) -> str:
        return "INFO" if self.success else "ERROR"


def run_with_deadline(
    run: Callable[[threading.Event], T],
    deadline_seconds: Optional[float],
    cancel: Optional[threading.Event] = None,
) -> T:
    """Call ``run(cancel)``; when the deadline elapses the cancel event is set."""
    cancel = cancel if cancel is not None else threading.Event()
    if deadline_seconds is None:
        return run(cancel)

    def _expire() -> None:
        log_utils.warn(f"Sync deadline of {deadline_seconds:g}s reached; cancelling.")
        cancel.set()

    timer = threading.Timer(max(0.0, deadline_seconds), _expire)
    timer.daemon = True
    timer.start()
    try:
        return run(cancel)
    finally:
        timer.cancel()


def run_sync_with_retries(
    orchestrator: SyncOrchestrator,
    metrics: Iterable[MetricKind | str],
    *,
    retries: int = DEFAULT_RETRIES,
    delay: float = DEFAULT_RETRY_DELAY_SECS,
    deadline_seconds: Optional[float] = None,
    label: str = "manual",
    cancel: Optional[threading.Event] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> SyncOutcome:
    """Run the orchestrator, retrying transient failures with jittered backoff."""

    metric_list = MetricKind.ordered(metrics)
    cancel = cancel if cancel is not None else threading.Event()
    max_attempts = max(1, retries)
    base_delay = max(0, delay)
    attempts = 0

    def _before_sleep(retry_state: RetryCallState) -> None:
        wait_time = getattr(retry_state.next_action, "sleep", base_delay)
        wait_time_str = f"{wait_time:.2f}".rstrip("0").rstrip(".") or "0"
        exception = retry_state.outcome.exception()
        log_utils.log_message(
            (
                f"Sync attempt {retry_state.attempt_number}/{max_attempts} "
                f"failed: {exception}. Retrying in {wait_time_str}s..."
            ),
            "WARN",
        )

    # Backoff waits on the cancel event so a deadline cuts the sleep short.
    retryer = Retrying(
        stop=stop_after_attempt(max_attempts) | stop_when_event_set(cancel),
        wait=wait_exponential(
            multiplier=base_delay,
            min=base_delay,
            max=base_delay * 8,
        )
        + wait_random(0, base_delay),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=_before_sleep,
        reraise=True,
        sleep=sleep if sleep is not None else cancel.wait,
    )

    def _attempt(event: threading.Event) -> SyncRunResult:
        nonlocal attempts
        raise_if_cancelled(event)
        attempts += 1
        return orchestrator.run(metric_list, cancel=event)

    try:
        result = run_with_deadline(lambda event: retryer(_attempt, event), deadline_seconds, cancel)
        outcome = SyncOutcome(success=True, attempts=attempts, label=label, result=result)
    except SyncError as exc:
        outcome = SyncOutcome(success=False, attempts=attempts, label=label, error=exc)

    log_utils.log_message(outcome.summary_line(), outcome.log_level())
    return outcome


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncScheduler:
    """Re-runs a sync every ``interval`` hours until stopped."""

    def __init__(
        self,
        run: Callable[[], SyncOutcome],
        interval: SyncIntervalHours | int,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._run = run
        self.interval = SyncIntervalHours(int(interval))
        self._clock = clock

    def next_run_at(self, after: datetime) -> datetime:
        return after + timedelta(hours=int(self.interval))

    def run_forever(self, stop: threading.Event, *, max_runs: Optional[int] = None) -> int:
        """Run until ``stop`` is set (checked between runs); returns the number of runs."""
        runs = 0
        log_utils.info(f"Scheduler started: {self.interval.title.lower()}.")
        while not stop.is_set():
            outcome = self._run()
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            next_at = self.next_run_at(self._clock())
            log_utils.info(
                f"Next sync at {next_at.isoformat()} (last run {'ok' if outcome.success else 'failed'})."
            )
            stop.wait(max(0.0, (next_at - self._clock()).total_seconds()))
        log_utils.info(f"Scheduler stopped after {runs} run(s).")
        return runs


__all__ = [
    "DEFAULT_RETRIES",
    "DEFAULT_RETRY_DELAY_SECS",
    "SyncOutcome",
    "SyncScheduler",
    "TRANSIENT_ERRORS",
    "run_sync_with_retries",
    "run_with_deadline",
]
