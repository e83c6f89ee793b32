from datetime import datetime, timedelta, timezone

import pytest
from typer.testing import CliRunner

import fitbit_sync.cli.main as main
from fitbit_sync.cli.status import CheckResult
from fitbit_sync.domain.dedup_ledger import DedupLedger
from fitbit_sync.domain.metrics import MetricKind
from fitbit_sync.domain.token_storage import TokenSet
from fitbit_sync.infrastructure.di_container import build_container
from fitbit_sync.infrastructure.fitbit_auth import FitbitAuthManager
from fitbit_sync.infrastructure.fitbit_client import FitbitAPIClient
from fitbit_sync.infrastructure.postgres_store import PostgresHealthStore
from tests.fakes import FakeFitbitSource, FakeHealthStore, InMemorySecretStore, InMemorySyncStateRepository


runner = CliRunner()


class CountingHealthStore(FakeHealthStore):
    def __init__(self):
        super().__init__()
        self.schema_calls = 0

    def ensure_schema(self):
        self.schema_calls += 1

    def counts_by_metric(self):
        counts = {metric: 0 for metric in MetricKind}
        for sample in self.samples.values():
            counts[sample.metric] += 1
        return counts


@pytest.fixture
def wiring(monkeypatch):
    secrets = InMemorySecretStore()
    TokenSet(
        access_token="access-token-value",
        refresh_token="refresh-token-value",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=8),
    ).save(secrets)
    auth = FitbitAuthManager(secrets)
    store = CountingHealthStore()
    source = FakeFitbitSource()
    state = InMemorySyncStateRepository()
    container = build_container(
        {
            FitbitAuthManager: auth,
            FitbitAPIClient: source,
            PostgresHealthStore: store,
            DedupLedger: DedupLedger(state),
        }
    )
    monkeypatch.setattr(main, "_container", lambda: container)
    return {"auth": auth, "store": store, "source": source, "state": state, "secrets": secrets}


def test_sync_success_exits_zero(wiring):
    result = runner.invoke(main.app, ["sync", "--metric", "steps"])

    assert result.exit_code == 0
    assert "Sync complete" in result.stdout
    assert wiring["store"].authorization_requests == [[MetricKind.STEPS]]
    assert MetricKind.STEPS in wiring["state"].cursors


def test_sync_denied_store_exits_one(wiring):
    wiring["store"].deny = True

    result = runner.invoke(main.app, ["sync", "-m", "sleep"])

    assert result.exit_code == 1
    assert "Write access denied" in result.stdout
    assert wiring["source"].calls == []


def test_sync_rejects_unknown_metric(wiring):
    result = runner.invoke(main.app, ["sync", "--metric", "heartbeat"])

    assert result.exit_code != 0
    assert wiring["store"].authorization_requests == []


def test_disconnect_clears_tokens(wiring):
    result = runner.invoke(main.app, ["disconnect"])

    assert result.exit_code == 0
    assert wiring["secrets"].values == {}
    assert not wiring["auth"].is_connected


def test_status_reports_connection_and_metrics(monkeypatch, wiring):
    monkeypatch.setattr(
        main,
        "run_status_checks",
        lambda *, timeout: [CheckResult("DB", True, "3ms")],
    )

    result = runner.invoke(main.app, ["status"])

    assert result.exit_code == 0
    assert "Fitbit" in result.stdout
    assert "connected, token valid until" in result.stdout
    assert "Steps" in result.stdout
    assert "never" in result.stdout


def test_status_failure_propagates(monkeypatch, wiring):
    captured = {}

    def fake_checks(*, timeout):
        captured["timeout"] = timeout
        return [CheckResult("DB", False, "connection refused")]

    monkeypatch.setattr(main, "run_status_checks", fake_checks)

    result = runner.invoke(main.app, ["status", "--timeout", "2.5"])

    assert result.exit_code == 1
    assert "FAIL" in result.stdout
    assert "connection refused" in result.stdout
    assert captured["timeout"] == 2.5


def test_init_db_creates_schema(wiring):
    result = runner.invoke(main.app, ["init-db"])

    assert result.exit_code == 0
    assert wiring["store"].schema_calls == 1
