"""
Run coordinator for the sync engine.
Drives every enabled metric through its strategy and aggregates the outcome.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone, tzinfo
from typing import Callable, Dict, Iterable, List, Optional

from fitbit_sync.domain.dedup_ledger import DedupLedger
from fitbit_sync.domain.destination import HealthStore
from fitbit_sync.domain.exceptions import AlreadyRunning, SyncError
from fitbit_sync.domain.metrics import MetricKind, SyncRunResult
from fitbit_sync.domain.strategies import (
    DEFAULT_LOOKBACK_DAYS,
    FitbitDataSource,
    MetricSyncStrategy,
    build_strategies,
    compute_window,
    raise_if_cancelled,
)
from fitbit_sync.infrastructure import log_utils

Clock = Callable[[], datetime]
StrategyFactory = Callable[..., Dict[MetricKind, MetricSyncStrategy]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Coordinates one sync run at a time across the enabled metrics."""

    def __init__(
        self,
        *,
        source: FitbitDataSource,
        store: HealthStore,
        ledger: DedupLedger,
        tz: tzinfo = timezone.utc,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        clock: Clock = _utcnow,
        strategy_factory: StrategyFactory = build_strategies,
    ) -> None:
        self.source = source
        self.store = store
        self.ledger = ledger
        self._tz = tz
        self._lookback_days = lookback_days
        self._clock = clock
        self._strategy_factory = strategy_factory
        self._run_guard = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._run_guard.locked()

    def run(
        self,
        enabled_metrics: Iterable[MetricKind | str],
        *,
        cancel: Optional[threading.Event] = None,
    ) -> SyncRunResult:
        """Synchronise ``enabled_metrics`` in declaration order.

        Raises :class:`AlreadyRunning` immediately if another run holds this
        orchestrator. A failing metric aborts the run; cursors and ledger
        entries committed by earlier metrics stay in place.
        """
        if not self._run_guard.acquire(blocking=False):
            log_utils.warn("Sync requested while another run is in progress; rejecting.")
            raise AlreadyRunning("Sync already in progress")
        try:
            return self._run_locked(MetricKind.ordered(enabled_metrics), cancel)
        finally:
            self._run_guard.release()

    def _run_locked(self, metrics: List[MetricKind], cancel: Optional[threading.Event]) -> SyncRunResult:
        started_at = self._clock()
        log_utils.info(
            f"Starting sync for {len(metrics)} metric(s): {', '.join(m.value for m in metrics) or 'none'}."
        )

        raise_if_cancelled(cancel)
        try:
            self.store.request_authorization(metrics)
        except SyncError as exc:
            log_utils.error(f"Destination authorization failed: {exc}")
            raise

        strategies = self._strategy_factory(source=self.source, store=self.store, ledger=self.ledger, tz=self._tz)

        total_written = 0
        details: List[str] = []
        for metric in metrics:
            raise_if_cancelled(cancel)
            window = compute_window(self.ledger.last_synced_at(metric), self._clock(), self._tz, self._lookback_days)
            try:
                written = strategies[metric].sync(metric, window, cancel)
                self.ledger.set_last_synced_at(metric, window.end)
            except SyncError as exc:
                if exc.metric is None:
                    exc.metric = metric
                log_utils.error(f"Sync aborted: {exc.describe()}")
                raise
            total_written += written
            details.append(f"{metric.label}: {written}")

        result = SyncRunResult(
            started_at=started_at,
            finished_at=self._clock(),
            written_count=total_written,
            details=tuple(details),
        )
        log_utils.info(result.summary_line())
        return result


__all__ = ["SyncOrchestrator"]
