"""
Main Command-Line Interface for fitbit-sync.

Connects the Fitbit account, runs incremental syncs into the health store,
and reports what has been synchronised so far.
"""
from __future__ import annotations

import threading
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table
from typer import Option
from typing_extensions import Annotated

from fitbit_sync.application.orchestrator import SyncOrchestrator
from fitbit_sync.application.sync import SyncScheduler, run_sync_with_retries
from fitbit_sync.cli.status import (
    DEFAULT_TIMEOUT_SECONDS,
    check_fitbit_connection,
    collect_metric_status,
    render_results,
    run_status_checks,
)
from fitbit_sync.config import settings
from fitbit_sync.domain.dedup_ledger import DedupLedger
from fitbit_sync.domain.exceptions import SyncError
from fitbit_sync.domain.metrics import MetricKind, SyncIntervalHours
from fitbit_sync.infrastructure import log_utils
from fitbit_sync.infrastructure.di_container import Container, get_container
from fitbit_sync.infrastructure.fitbit_auth import FitbitAuthManager
from fitbit_sync.infrastructure.fitbit_oauth_helper import ConsolePromptAuthorizer
from fitbit_sync.infrastructure.postgres_store import PostgresHealthStore

console = Console()

app = typer.Typer(
    name="fitbit-sync",
    help="Incrementally copy Fitbit body, activity and sleep data into the health store.",
    add_completion=False,
)


def _container() -> Container:
    return get_container()


def _parse_metrics(values: Optional[List[str]]) -> List[MetricKind]:
    if not values:
        return settings.enabled_metrics
    tokens = [token for value in values for token in value.split(",") if token.strip()]
    try:
        return MetricKind.ordered(tokens)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--metric") from exc


def _truncate(token: str) -> str:
    return f"{token[:12]}... (truncated)"


def _require_client_id() -> str:
    if not settings.FITBIT_CLIENT_ID:
        console.print("[red]FITBIT_CLIENT_ID is not configured.[/red]")
        raise typer.Exit(code=1)
    return settings.FITBIT_CLIENT_ID


@app.command()
def connect(
    manual: Annotated[
        bool, Option("--manual", help="Paste the redirect URL instead of using a local callback server.")
    ] = False,
) -> None:
    """Authorize fitbit-sync with your Fitbit account (OAuth2 + PKCE)."""
    client_id = _require_client_id()
    auth: FitbitAuthManager = _container().resolve(FitbitAuthManager)
    if manual:
        auth.authorizer = ConsolePromptAuthorizer()
    try:
        tokens = auth.authorize(client_id)
    except SyncError as exc:
        log_utils.log_message(f"Fitbit connect failed: {exc}", "ERROR")
        console.print(f"[red]Fitbit connect failed: {exc}[/red]")
        raise typer.Exit(code=1)
    console.print("[green][OK] Connected to Fitbit.[/green]")
    typer.echo(f"Access token valid until {tokens.expires_at.isoformat()}.")


@app.command()
def disconnect() -> None:
    """Forget the stored Fitbit tokens."""
    auth: FitbitAuthManager = _container().resolve(FitbitAuthManager)
    auth.clear_tokens()
    typer.echo("Disconnected from Fitbit; stored tokens removed.")


@app.command("refresh-token")
def refresh_token() -> None:
    """Force a Fitbit token refresh and store the new tokens."""
    client_id = _require_client_id()
    auth: FitbitAuthManager = _container().resolve(FitbitAuthManager)
    try:
        tokens = auth.refresh_tokens(client_id)
    except SyncError as exc:
        log_utils.log_message(f"Failed to refresh Fitbit tokens: {exc}", "ERROR")
        console.print(f"[red]Failed to refresh Fitbit tokens: {exc}[/red]")
        raise typer.Exit(code=1)
    typer.echo("[OK] Fitbit tokens refreshed.")
    typer.echo(f"Access token:  {_truncate(tokens.access_token)}")
    typer.echo(f"Valid until:   {tokens.expires_at.isoformat()}")


@app.command()
def sync(
    metric: Annotated[
        Optional[List[str]],
        Option("--metric", "-m", help="Metric to sync (repeatable). Defaults to SYNC_ENABLED_METRICS."),
    ] = None,
    retries: Annotated[int, Option(help="Number of attempts for transient failures.")] = settings.SYNC_RETRIES,
    deadline: Annotated[
        Optional[float], Option(help="Cancel the run after this many seconds.")
    ] = settings.SYNC_DEADLINE_SECONDS,
) -> None:
    """Run one incremental sync now."""
    metrics = _parse_metrics(metric)
    orchestrator: SyncOrchestrator = _container().resolve(SyncOrchestrator)
    log_utils.log_message(f"Starting manual sync for {', '.join(m.value for m in metrics)}.", "INFO")
    outcome = run_sync_with_retries(
        orchestrator,
        metrics,
        retries=retries,
        delay=settings.SYNC_RETRY_DELAY_SECS,
        deadline_seconds=deadline,
        label="manual",
    )
    if outcome.success and outcome.result is not None:
        console.print(f"[green]{outcome.result.summary_line()}[/green]")
        raise typer.Exit(code=0)
    error = outcome.error.describe() if outcome.error else "unknown error"
    console.print(f"[red]Sync failed: {error}[/red]")
    raise typer.Exit(code=1)


@app.command()
def status(
    timeout: Annotated[
        float, Option("--timeout", help="Override per-dependency timeout in seconds.")
    ] = DEFAULT_TIMEOUT_SECONDS,
) -> None:
    """Show the Fitbit connection, database health and per-metric sync state."""
    container = _container()
    auth: FitbitAuthManager = container.resolve(FitbitAuthManager)
    ledger: DedupLedger = container.resolve(DedupLedger)

    results = [check_fitbit_connection(auth.token_set)] + run_status_checks(timeout=timeout)
    typer.echo(render_results(results))

    counts = None
    if all(result.ok for result in results):
        try:
            counts = container.resolve(PostgresHealthStore).counts_by_metric()
        except Exception as exc:  # pragma: no cover - status stays best effort
            log_utils.log_message(f"Could not count stored samples: {exc}", "WARN")

    table = Table(header_style="bold cyan")
    table.add_column("Metric")
    table.add_column("Last synced")
    table.add_column("Seen", justify="right")
    table.add_column("Stored", justify="right")
    for row in collect_metric_status(ledger, settings.enabled_metrics, counts=counts):
        table.add_row(
            row.metric.label,
            row.last_synced_at.isoformat() if row.last_synced_at else "never",
            str(row.seen_count),
            "-" if row.stored_count is None else str(row.stored_count),
        )
    console.print(table)

    exit_code = 0 if all(result.ok for result in results) else 1
    raise typer.Exit(code=exit_code)


@app.command()
def watch(
    interval: Annotated[
        Optional[int], Option(help="Hours between runs (2, 4, 8 or 12). Defaults to SYNC_INTERVAL_HOURS.")
    ] = None,
    retries: Annotated[int, Option(help="Number of attempts for transient failures.")] = settings.SYNC_RETRIES,
) -> None:
    """Keep running syncs on a fixed interval until interrupted."""
    try:
        cadence = SyncIntervalHours(interval) if interval is not None else settings.sync_interval
    except ValueError as exc:
        raise typer.BadParameter(f"{interval} is not one of 2, 4, 8 or 12", param_hint="--interval") from exc

    orchestrator: SyncOrchestrator = _container().resolve(SyncOrchestrator)
    metrics = settings.enabled_metrics

    def _run_once():
        return run_sync_with_retries(
            orchestrator,
            metrics,
            retries=retries,
            delay=settings.SYNC_RETRY_DELAY_SECS,
            deadline_seconds=settings.SYNC_DEADLINE_SECONDS,
            label="scheduled",
        )

    scheduler = SyncScheduler(_run_once, cadence)
    stop = threading.Event()
    typer.echo(f"Syncing {cadence.title.lower()}. Press Ctrl+C to stop.")
    try:
        scheduler.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()
        typer.echo("Stopped.")


@app.command("init-db")
def init_db() -> None:
    """Create the health store tables if they do not exist."""
    store: PostgresHealthStore = _container().resolve(PostgresHealthStore)
    try:
        store.ensure_schema()
    except Exception as exc:
        log_utils.log_message(f"Failed to initialise health store: {exc}", "ERROR")
        console.print(f"[red]Failed to initialise health store: {exc}[/red]")
        raise typer.Exit(code=1)
    console.print("[green][OK] Health store schema ready.[/green]")


if __name__ == "__main__":
    app()
