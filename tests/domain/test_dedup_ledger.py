import threading
from datetime import datetime, timezone

import pytest

from fitbit_sync.domain.dedup_ledger import DedupLedger
from fitbit_sync.domain.metrics import MetricKind
from tests.fakes import InMemorySyncStateRepository


def test_mark_seen_then_has_seen(ledger):
    assert not ledger.has_seen("fitbit-steps-2024-03-09", MetricKind.STEPS)

    ledger.mark_seen("fitbit-steps-2024-03-09", MetricKind.STEPS)

    assert ledger.has_seen("fitbit-steps-2024-03-09", MetricKind.STEPS)
    assert not ledger.has_seen("fitbit-steps-2024-03-09", MetricKind.ACTIVE_ENERGY)


def test_remarking_is_a_no_op(ledger, state_repository):
    ledger.mark_seen("a", MetricKind.SLEEP)
    saves = state_repository.seen_saves

    ledger.mark_seen("a", MetricKind.SLEEP)

    assert ledger.size(MetricKind.SLEEP) == 1
    assert state_repository.seen_saves == saves


def test_bound_evicts_oldest_inserted_first(ledger):
    for index in range(6000):
        ledger.mark_seen(str(index), MetricKind.BODY_WEIGHT)

    assert ledger.size(MetricKind.BODY_WEIGHT) == 4999
    assert not ledger.has_seen("0", MetricKind.BODY_WEIGHT)
    assert not ledger.has_seen("1000", MetricKind.BODY_WEIGHT)
    assert ledger.has_seen("1001", MetricKind.BODY_WEIGHT)
    assert ledger.has_seen("5999", MetricKind.BODY_WEIGHT)


def test_size_never_exceeds_capacity():
    repository = InMemorySyncStateRepository()
    ledger = DedupLedger(repository, capacity=10, trim_to=8)

    sizes = []
    for index in range(25):
        ledger.mark_seen(f"id-{index}", MetricKind.STEPS)
        sizes.append(ledger.size(MetricKind.STEPS))

    assert max(sizes) == 10
    assert ledger.identifiers(MetricKind.STEPS)[0] == "id-15"
    assert repository.seen[MetricKind.STEPS] == ledger.identifiers(MetricKind.STEPS)


def test_ledger_loads_persisted_identifiers():
    repository = InMemorySyncStateRepository()
    repository.seen[MetricKind.SLEEP] = ["fitbit-sleep-1", "fitbit-sleep-2"]

    ledger = DedupLedger(repository)

    assert ledger.has_seen("fitbit-sleep-2", MetricKind.SLEEP)
    assert ledger.size(MetricKind.SLEEP) == 2


def test_cursor_round_trip(ledger):
    stamp = datetime(2024, 3, 9, 8, 30, tzinfo=timezone.utc)

    assert ledger.last_synced_at(MetricKind.STEPS) is None
    ledger.set_last_synced_at(MetricKind.STEPS, stamp)

    assert ledger.last_synced_at(MetricKind.STEPS) == stamp


def test_naive_cursor_rejected(ledger):
    with pytest.raises(ValueError):
        ledger.set_last_synced_at(MetricKind.STEPS, datetime(2024, 3, 9, 8, 30))


def test_invalid_bounds_rejected():
    with pytest.raises(ValueError):
        DedupLedger(InMemorySyncStateRepository(), capacity=100, trim_to=200)


def test_concurrent_marks_keep_ledger_consistent(ledger):
    def worker(offset: int) -> None:
        for index in range(200):
            ledger.mark_seen(f"{offset}-{index}", MetricKind.STEPS)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert ledger.size(MetricKind.STEPS) == 800
