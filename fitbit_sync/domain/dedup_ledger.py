"""Per-metric record of what the engine has already written.

The ledger keeps, for every metric, the identifiers of records that were
successfully written, in insertion order, plus the metric's sync cursor. The
identifier sets are bounded: once a set grows past ``capacity`` the oldest
identifiers are evicted until ``trim_to`` remain. Eviction is deterministic
(oldest-inserted first), so the same sequence of writes always yields the same
ledger contents.

An evicted identifier can be written again by a later run if the remote API
still returns the record. The destination store deduplicates on the same
identifier, which keeps that case from producing a duplicate sample.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Protocol, Sequence

from fitbit_sync.domain import logging as domain_logging
from fitbit_sync.domain.metrics import MetricKind

DEFAULT_CAPACITY = 5000
DEFAULT_TRIM_TO = 4000


class SyncStateRepository(Protocol):
    """Persistence operations required by the ledger."""

    def load_seen(self, metric: MetricKind) -> Sequence[str]:
        """Return the metric's identifiers, oldest first."""

    def save_seen(self, metric: MetricKind, identifiers: Sequence[str]) -> None:
        """Replace the metric's identifiers, oldest first."""

    def load_cursor(self, metric: MetricKind) -> Optional[datetime]:
        """Return the metric's last synced timestamp, if any."""

    def save_cursor(self, metric: MetricKind, value: datetime) -> None:
        """Persist the metric's last synced timestamp."""


class DedupLedger:
    """Bounded, insertion-ordered seen-set and cursor per metric."""

    def __init__(
        self,
        repository: SyncStateRepository,
        *,
        capacity: int = DEFAULT_CAPACITY,
        trim_to: int = DEFAULT_TRIM_TO,
    ) -> None:
        if trim_to <= 0 or trim_to > capacity:
            raise ValueError("trim_to must be positive and no larger than capacity")
        self._repository = repository
        self._capacity = capacity
        self._trim_to = trim_to
        self._seen: Dict[MetricKind, "OrderedDict[str, None]"] = {}
        self._locks: Dict[MetricKind, threading.RLock] = {metric: threading.RLock() for metric in MetricKind}

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def trim_to(self) -> int:
        return self._trim_to

    @contextmanager
    def lock(self, metric: MetricKind) -> Iterator[None]:
        """Hold the metric's mutex across a check, write and mark sequence."""
        with self._locks[metric]:
            yield

    def has_seen(self, identifier: str, metric: MetricKind) -> bool:
        with self._locks[metric]:
            return identifier in self._identifiers(metric)

    def mark_seen(self, identifier: str, metric: MetricKind) -> None:
        with self._locks[metric]:
            identifiers = self._identifiers(metric)
            if identifier in identifiers:
                return
            identifiers[identifier] = None
            if len(identifiers) > self._capacity:
                evicted = len(identifiers) - self._trim_to
                for _ in range(evicted):
                    identifiers.popitem(last=False)
                domain_logging.debug(
                    f"Seen ledger for {metric.value} exceeded {self._capacity}; evicted {evicted} oldest identifiers.",
                    tag="LEDGER",
                )
            self._repository.save_seen(metric, list(identifiers))

    def size(self, metric: MetricKind) -> int:
        with self._locks[metric]:
            return len(self._identifiers(metric))

    def identifiers(self, metric: MetricKind) -> List[str]:
        """Snapshot of the metric's identifiers, oldest first."""
        with self._locks[metric]:
            return list(self._identifiers(metric))

    def last_synced_at(self, metric: MetricKind) -> Optional[datetime]:
        with self._locks[metric]:
            return self._repository.load_cursor(metric)

    def set_last_synced_at(self, metric: MetricKind, value: datetime) -> None:
        if value.tzinfo is None:
            raise ValueError("Sync cursors must be timezone-aware")
        with self._locks[metric]:
            self._repository.save_cursor(metric, value)

    def _identifiers(self, metric: MetricKind) -> "OrderedDict[str, None]":
        cached = self._seen.get(metric)
        if cached is None:
            cached = OrderedDict((identifier, None) for identifier in self._repository.load_seen(metric))
            self._seen[metric] = cached
        return cached


__all__ = ["DEFAULT_CAPACITY", "DEFAULT_TRIM_TO", "DedupLedger", "SyncStateRepository"]
