"""Per-metric synchronisation pipelines.

Every strategy runs the same algorithm over a fetch window: pull remote records,
derive a stable identifier for each, skip identifiers the ledger has already
seen, transform the rest into destination samples, write them, and mark them
seen. Strategies differ only in how they fetch and how a record maps to
samples.
"""

from __future__ import annotations

import hashlib
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

from fitbit_sync.domain import logging as domain_logging
from fitbit_sync.domain.dedup_ledger import DedupLedger
from fitbit_sync.domain.destination import HealthSample, HealthStore
from fitbit_sync.domain.exceptions import SyncCancelled
from fitbit_sync.domain.metrics import DailyValue, MetricKind, SleepLog, WeightLog

DEFAULT_LOOKBACK_DAYS = 7


class FitbitDataSource(Protocol):
    """Remote calls the strategies depend on. Each raises ``RemoteAPIError`` on failure."""

    def fetch_weight_logs(self, start: date, end: date) -> List[WeightLog]:
        """Weight log entries dated within ``[start, end]``."""

    def fetch_daily_steps(self, start: date, end: date) -> List[DailyValue]:
        """Daily step totals within ``[start, end]``."""

    def fetch_daily_calories(self, start: date, end: date) -> List[DailyValue]:
        """Daily calorie totals within ``[start, end]``."""

    def fetch_resting_heart_rate(self, day: date) -> Optional[DailyValue]:
        """Resting heart rate for a single day, if Fitbit computed one."""

    def fetch_sleep_logs(self, start: date, end: date) -> List[SleepLog]:
        """Sleep log entries whose sleep date falls within ``[start, end]``."""


@dataclass(frozen=True)
class SyncWindow:
    """Time range a strategy fetches for one run."""

    start: datetime
    end: datetime
    tz: tzinfo

    @property
    def start_date(self) -> date:
        return self.start.astimezone(self.tz).date()

    @property
    def end_date(self) -> date:
        return self.end.astimezone(self.tz).date()

    def days(self) -> Iterator[date]:
        day = self.start_date
        while day <= self.end_date:
            yield day
            day += timedelta(days=1)


def compute_window(
    last_synced_at: Optional[datetime],
    now: datetime,
    tz: tzinfo,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> SyncWindow:
    """Window starts at the cursor, or ``lookback_days`` before ``now`` when never synced."""
    start = last_synced_at if last_synced_at is not None else now - timedelta(days=lookback_days)
    return SyncWindow(start=start, end=now, tz=tz)


def raise_if_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise SyncCancelled("Sync cancelled before completion.")


class MetricSyncStrategy(ABC):
    """Shared fetch → filter → transform → write → mark pipeline."""

    metrics: Tuple[MetricKind, ...] = ()

    def __init__(self, *, source: FitbitDataSource, store: HealthStore, ledger: DedupLedger, tz: tzinfo) -> None:
        self._source = source
        self._store = store
        self._ledger = ledger
        self._tz = tz

    def sync(self, metric: MetricKind, window: SyncWindow, cancel: Optional[threading.Event] = None) -> int:
        """Synchronise ``metric`` over ``window``; returns how many samples were stored."""
        if metric not in self.metrics:
            raise ValueError(f"{type(self).__name__} does not handle {metric.value}")

        raise_if_cancelled(cancel)
        records = self.fetch(window, cancel)
        written = 0
        for record in records:
            for sample in self.samples_for(metric, record):
                raise_if_cancelled(cancel)
                written += self._write_once(metric, sample)
        domain_logging.info(
            f"{metric.label}: {len(records)} remote records "
            f"{window.start_date.isoformat()}..{window.end_date.isoformat()}, {written} written."
        )
        return written

    @abstractmethod
    def fetch(self, window: SyncWindow, cancel: Optional[threading.Event]) -> Sequence[object]:
        """Pull the remote records for ``window``."""

    @abstractmethod
    def samples_for(self, metric: MetricKind, record: object) -> Iterable[HealthSample]:
        """Map one remote record to destination samples for ``metric``."""

    def _write_once(self, metric: MetricKind, sample: HealthSample) -> int:
        with self._ledger.lock(metric):
            if self._ledger.has_seen(sample.idempotency_key, metric):
                return 0
            stored = self._store.save_sample(sample)
            self._ledger.mark_seen(sample.idempotency_key, metric)
        if not stored:
            domain_logging.debug(f"Destination already held {sample.idempotency_key}; marked seen.")
        return 1 if stored else 0

    # --- helpers shared by the concrete strategies ---

    def _day_start(self, text: str) -> Optional[datetime]:
        try:
            day = date.fromisoformat(text)
        except ValueError:
            return None
        return datetime.combine(day, time.min, tzinfo=self._tz)

    def _local_datetime(self, text: str) -> Optional[datetime]:
        try:
            parsed = datetime.fromisoformat(text)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self._tz)
        return parsed

    def _closed_days(self, records: Sequence[DailyValue], window: SyncWindow) -> List[DailyValue]:
        """Drop totals for the local day still in progress; the next window starts inside it."""
        open_day = window.end_date.isoformat()
        return [record for record in records if record.date_time != open_day]

    def _daily_interval_sample(self, metric: MetricKind, record: DailyValue, prefix: str) -> List[HealthSample]:
        value = record.numeric_value()
        day_start = self._day_start(record.date_time)
        if value is None or day_start is None:
            domain_logging.warn(f"Skipping unparsable {metric.value} value for {record.date_time!r}: {record.value!r}")
            return []
        return [
            HealthSample(
                metric=metric,
                value=value,
                start=day_start,
                end=day_start + timedelta(days=1),
                idempotency_key=f"fitbit-{prefix}-{record.date_time}",
            )
        ]


class WeightStrategy(MetricSyncStrategy):
    """Body weight and body fat share one weight-log fetch per window."""

    metrics = (MetricKind.BODY_WEIGHT, MetricKind.BODY_FAT)

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._fetched: Dict[Tuple[date, date], List[WeightLog]] = {}

    def fetch(self, window: SyncWindow, cancel: Optional[threading.Event]) -> Sequence[WeightLog]:
        key = (window.start_date, window.end_date)
        if key not in self._fetched:
            self._fetched[key] = self._source.fetch_weight_logs(*key)
        return self._fetched[key]

    def samples_for(self, metric: MetricKind, record: WeightLog) -> List[HealthSample]:
        measured_at = self._local_datetime(f"{record.date}T{record.time}") or self._day_start(record.date)
        if measured_at is None:
            domain_logging.warn(f"Skipping weight log {record.log_id} with unparsable date {record.date!r}")
            return []

        if metric is MetricKind.BODY_WEIGHT:
            return [
                HealthSample(
                    metric=metric,
                    value=record.weight,
                    start=measured_at,
                    end=measured_at,
                    idempotency_key=f"fitbit-weight-{record.log_id}",
                )
            ]
        if record.fat is None:
            return []
        return [
            HealthSample(
                metric=metric,
                value=record.fat / 100.0,
                start=measured_at,
                end=measured_at,
                idempotency_key=f"fitbit-fat-{record.log_id}",
            )
        ]


class StepsStrategy(MetricSyncStrategy):
    metrics = (MetricKind.STEPS,)

    def fetch(self, window: SyncWindow, cancel: Optional[threading.Event]) -> Sequence[DailyValue]:
        return self._closed_days(self._source.fetch_daily_steps(window.start_date, window.end_date), window)

    def samples_for(self, metric: MetricKind, record: DailyValue) -> List[HealthSample]:
        return self._daily_interval_sample(metric, record, "steps")


class ActiveEnergyStrategy(MetricSyncStrategy):
    metrics = (MetricKind.ACTIVE_ENERGY,)

    def fetch(self, window: SyncWindow, cancel: Optional[threading.Event]) -> Sequence[DailyValue]:
        return self._closed_days(self._source.fetch_daily_calories(window.start_date, window.end_date), window)

    def samples_for(self, metric: MetricKind, record: DailyValue) -> List[HealthSample]:
        return self._daily_interval_sample(metric, record, "active-energy")


class RestingHeartRateStrategy(MetricSyncStrategy):
    """Fitbit has no multi-day resting heart rate endpoint, so the window is paged day by day.

    A failed day aborts the strategy; days already fetched are not written.
    """

    metrics = (MetricKind.RESTING_HEART_RATE,)

    def fetch(self, window: SyncWindow, cancel: Optional[threading.Event]) -> Sequence[DailyValue]:
        merged: List[DailyValue] = []
        for day in window.days():
            raise_if_cancelled(cancel)
            value = self._source.fetch_resting_heart_rate(day)
            if value is not None:
                merged.append(value)
        return merged

    def samples_for(self, metric: MetricKind, record: DailyValue) -> List[HealthSample]:
        bpm = record.numeric_value()
        day_start = self._day_start(record.date_time)
        if bpm is None or day_start is None:
            domain_logging.warn(f"Skipping unparsable resting heart rate for {record.date_time!r}")
            return []
        return [
            HealthSample(
                metric=metric,
                value=bpm,
                start=day_start,
                end=day_start,
                idempotency_key=f"fitbit-rhr-{record.date_time}",
            )
        ]


def sleep_identifier(record: SleepLog) -> Optional[str]:
    """Stable identifier for a sleep log.

    Uses ``logId`` when present; otherwise a hash of the start and end times.
    Returns ``None`` when the record carries neither.
    """
    if record.log_id is not None:
        return f"fitbit-sleep-{record.log_id}"
    if record.start_time and record.end_time:
        digest = hashlib.sha256(f"{record.start_time}|{record.end_time}".encode("utf-8")).hexdigest()
        return f"fitbit-sleep-{digest[:16]}"
    return None


class SleepStrategy(MetricSyncStrategy):
    metrics = (MetricKind.SLEEP,)

    def fetch(self, window: SyncWindow, cancel: Optional[threading.Event]) -> Sequence[SleepLog]:
        return self._source.fetch_sleep_logs(window.start_date, window.end_date)

    def samples_for(self, metric: MetricKind, record: SleepLog) -> List[HealthSample]:
        identifier = sleep_identifier(record)
        if identifier is None:
            domain_logging.warn(
                f"Skipping sleep log without logId or start/end times (dateOfSleep={record.date_of_sleep!r})."
            )
            return []

        start = self._local_datetime(record.start_time) if record.start_time else None
        end = self._local_datetime(record.end_time) if record.end_time else None
        if start is None or end is None or end <= start:
            domain_logging.warn(f"Skipping sleep log {identifier}: unusable start/end times.")
            return []

        minutes = (end - start).total_seconds() / 60.0
        return [HealthSample(metric=metric, value=minutes, start=start, end=end, idempotency_key=identifier)]


def build_strategies(
    *,
    source: FitbitDataSource,
    store: HealthStore,
    ledger: DedupLedger,
    tz: tzinfo,
) -> Dict[MetricKind, MetricSyncStrategy]:
    """Fresh strategy set for one run; weight and fat share one instance."""
    common = dict(source=source, store=store, ledger=ledger, tz=tz)
    strategies: List[MetricSyncStrategy] = [
        WeightStrategy(**common),
        StepsStrategy(**common),
        RestingHeartRateStrategy(**common),
        ActiveEnergyStrategy(**common),
        SleepStrategy(**common),
    ]
    return {metric: strategy for strategy in strategies for metric in strategy.metrics}


__all__ = [
    "ActiveEnergyStrategy",
    "DEFAULT_LOOKBACK_DAYS",
    "FitbitDataSource",
    "MetricSyncStrategy",
    "RestingHeartRateStrategy",
    "SleepStrategy",
    "StepsStrategy",
    "SyncWindow",
    "WeightStrategy",
    "build_strategies",
    "compute_window",
    "raise_if_cancelled",
    "sleep_identifier",
]
