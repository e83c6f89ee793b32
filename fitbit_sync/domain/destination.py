"""Contract for the health data store the engine writes into."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Collection, Protocol

from fitbit_sync.domain.metrics import MetricKind

SAMPLE_SOURCE = "fitbit"


@dataclass(frozen=True)
class HealthSample:
    """One destination record, tagged with the identifier used for dedup."""

    metric: MetricKind
    value: float
    start: datetime
    end: datetime
    idempotency_key: str
    source: str = SAMPLE_SOURCE

    @property
    def unit(self) -> str:
        return self.metric.unit


class HealthStore(Protocol):
    """Write-only view of the destination store."""

    def request_authorization(self, metrics: Collection[MetricKind]) -> None:
        """Obtain the write grant for ``metrics``.

        Raises :class:`~fitbit_sync.domain.exceptions.DestinationAuthError` when
        the grant is denied or prerequisite configuration is missing.
        """

    def save_sample(self, sample: HealthSample) -> bool:
        """Write ``sample``; ``False`` when the store already holds its idempotency key.

        Raises :class:`~fitbit_sync.domain.exceptions.DestinationWriteError`.
        """


__all__ = ["HealthSample", "HealthStore", "SAMPLE_SOURCE"]
