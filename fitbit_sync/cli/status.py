"""Health check and per-metric status support for the fitbit-sync CLI."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from typing import Callable, Iterable, List, Optional, Sequence

import psycopg

from fitbit_sync.domain.dedup_ledger import DedupLedger
from fitbit_sync.domain.metrics import MetricKind
from fitbit_sync.domain.token_storage import TokenSet
from fitbit_sync.infrastructure.db_conn import get_database_url

DEFAULT_TIMEOUT_SECONDS = 3.0


@dataclass
class CheckResult:
    """Represents a single dependency check outcome."""

    name: str
    ok: bool
    detail: str


@dataclass
class MetricStatus:
    metric: MetricKind
    last_synced_at: Optional[datetime]
    seen_count: int
    stored_count: Optional[int] = None


def _format_duration(start: float) -> str:
    elapsed = perf_counter() - start
    if elapsed < 0.001:
        return "<1ms"
    return f"{int(elapsed * 1000)}ms"


def _format_exception(exc: Exception) -> str:
    message = str(exc).strip()
    if not message:
        message = exc.__class__.__name__
    return message.splitlines()[0]


def check_database(timeout: float = DEFAULT_TIMEOUT_SECONDS) -> CheckResult:
    start = perf_counter()
    try:
        with psycopg.connect(get_database_url(), connect_timeout=max(1, int(timeout))) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
    except Exception as exc:  # pragma: no cover - handled via result
        return CheckResult(name="DB", ok=False, detail=_format_exception(exc))
    return CheckResult(name="DB", ok=True, detail=_format_duration(start))


def check_fitbit_connection(token_set: Optional[TokenSet], now: Optional[datetime] = None) -> CheckResult:
    """Report whether a token set is stored and when its access token expires."""
    if token_set is None:
        return CheckResult(name="Fitbit", ok=False, detail="not connected (run 'fitbit-sync connect')")
    now = now or datetime.now(timezone.utc)
    if token_set.expires_at <= now:
        return CheckResult(name="Fitbit", ok=True, detail="connected, access token expired (refreshes on next sync)")
    return CheckResult(name="Fitbit", ok=True, detail=f"connected, token valid until {token_set.expires_at.isoformat()}")


def run_status_checks(
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    checks: Sequence[Callable[[], CheckResult]] | None = None,
) -> List[CheckResult]:
    """Executes dependency checks, allowing override for testing."""

    if checks is None:
        checks = (lambda: check_database(timeout),)

    return [check() for check in checks]


def collect_metric_status(
    ledger: DedupLedger,
    metrics: Iterable[MetricKind],
    *,
    counts: Optional[dict] = None,
) -> List[MetricStatus]:
    return [
        MetricStatus(
            metric=metric,
            last_synced_at=ledger.last_synced_at(metric),
            seen_count=ledger.size(metric),
            stored_count=(counts or {}).get(metric),
        )
        for metric in metrics
    ]


def render_results(results: Iterable[CheckResult]) -> str:
    lines = []
    for result in results:
        status = "OK" if result.ok else "FAIL"
        lines.append(f"{result.name:<8} {status:<4} {result.detail}")
    return "\n".join(lines)
