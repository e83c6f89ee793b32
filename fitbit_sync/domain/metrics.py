"""Metric catalogue, remote record shapes and run results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Iterable, List, Mapping, Optional, Tuple


class MetricKind(str, Enum):
    """Closed set of metrics the engine knows how to synchronise.

    Declaration order is the canonical processing order for a run.
    """

    BODY_WEIGHT = "bodyWeight"
    BODY_FAT = "bodyFat"
    STEPS = "steps"
    SLEEP = "sleep"
    RESTING_HEART_RATE = "restingHeartRate"
    ACTIVE_ENERGY = "activeEnergy"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def sample_type(self) -> str:
        """Destination sample type the metric is written as."""
        return _SAMPLE_TYPES[self][0]

    @property
    def unit(self) -> str:
        return _SAMPLE_TYPES[self][1]

    @property
    def is_interval(self) -> bool:
        """True when samples cover a time range rather than an instant."""
        return self in (MetricKind.STEPS, MetricKind.ACTIVE_ENERGY, MetricKind.SLEEP)

    @classmethod
    def parse(cls, raw: "str | MetricKind") -> "MetricKind":
        """Resolve a metric from its value (``restingHeartRate``) or name (``RESTING_HEART_RATE``)."""
        if isinstance(raw, MetricKind):
            return raw
        text = str(raw).strip()
        lowered = text.lower().replace("-", "_")
        for metric in cls:
            if lowered in (metric.value.lower(), metric.name.lower()):
                return metric
        raise ValueError(f"Unknown metric '{raw}'. Expected one of: {', '.join(m.value for m in cls)}")

    @classmethod
    def ordered(cls, metrics: Iterable["MetricKind | str"]) -> List["MetricKind"]:
        """Return the distinct metrics in declaration order."""
        wanted = {cls.parse(metric) for metric in metrics}
        return [metric for metric in cls if metric in wanted]


_LABELS = {
    MetricKind.BODY_WEIGHT: "Body Weight",
    MetricKind.BODY_FAT: "Body Fat %",
    MetricKind.STEPS: "Steps",
    MetricKind.SLEEP: "Sleep",
    MetricKind.RESTING_HEART_RATE: "Resting Heart Rate",
    MetricKind.ACTIVE_ENERGY: "Active Energy",
}

_SAMPLE_TYPES = {
    MetricKind.BODY_WEIGHT: ("body_mass", "kg"),
    MetricKind.BODY_FAT: ("body_fat_percentage", "fraction"),
    MetricKind.STEPS: ("step_count", "count"),
    MetricKind.SLEEP: ("sleep_analysis", "min"),
    MetricKind.RESTING_HEART_RATE: ("resting_heart_rate", "count/min"),
    MetricKind.ACTIVE_ENERGY: ("active_energy_burned", "kcal"),
}


class SyncIntervalHours(IntEnum):
    """Allowed background sync cadences."""

    EVERY_2 = 2
    EVERY_4 = 4
    EVERY_8 = 8
    EVERY_12 = 12

    @property
    def title(self) -> str:
        return f"Every {int(self)} hours"

    @property
    def short_title(self) -> str:
        return f"{int(self)}h"


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class WeightLog:
    """One entry from the Fitbit body weight log."""

    log_id: int
    date: str
    time: str
    weight: float
    fat: Optional[float] = None
    bmi: Optional[float] = None
    source: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WeightLog":
        return cls(
            log_id=int(payload["logId"]),
            date=str(payload["date"]),
            time=str(payload.get("time") or "00:00:00"),
            weight=float(payload["weight"]),
            fat=_optional_float(payload.get("fat")),
            bmi=_optional_float(payload.get("bmi")),
            source=payload.get("source"),
        )


@dataclass(frozen=True)
class DailyValue:
    """A per-day time-series point; Fitbit reports the value as a string."""

    date_time: str
    value: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DailyValue":
        return cls(date_time=str(payload["dateTime"]), value=str(payload["value"]))

    def numeric_value(self) -> Optional[float]:
        return _optional_float(self.value)


@dataclass(frozen=True)
class SleepLog:
    log_id: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    date_of_sleep: Optional[str] = None
    duration: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SleepLog":
        return cls(
            log_id=_optional_int(payload.get("logId")),
            start_time=payload.get("startTime"),
            end_time=payload.get("endTime"),
            date_of_sleep=payload.get("dateOfSleep"),
            duration=_optional_int(payload.get("duration")),
        )


@dataclass(frozen=True)
class SyncRunResult:
    """Outcome of one orchestrator run. Returned to the caller, never persisted."""

    started_at: datetime
    finished_at: datetime
    written_count: int
    details: Tuple[str, ...] = ()

    def summary_line(self) -> str:
        elapsed = (self.finished_at - self.started_at).total_seconds()
        details = "; ".join(self.details) if self.details else "no metrics enabled"
        return f"Sync complete ({self.written_count} samples in {elapsed:.1f}s): {details}"


__all__ = [
    "DailyValue",
    "MetricKind",
    "SleepLog",
    "SyncIntervalHours",
    "SyncRunResult",
    "WeightLog",
]
