"""
CLI interface for usage-sync.

Provides the server (schema setup, token issuing, serving) and the client
(local fingerprints, incremental submit) from one entry point.
"""

import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_sync.client.api import UsageSyncClient
from usage_sync.client.credentials import Credentials, FileCredentialProvider
from usage_sync.client.sync import SyncStatus, sync_usage
from usage_sync.config.loader import SyncConfig, load_sync_config
from usage_sync.core.aggregator import AggregateCache
from usage_sync.core.diff import DiffMode
from usage_sync.core.events import load_usage_events
from usage_sync.core.hasher import compute_fingerprints
from usage_sync.errors import UsageSyncError, ValidationError
from usage_sync.logging import configure_logging
from usage_sync.server.app import create_app
from usage_sync.server.service import ReconciliationService
from usage_sync.storage.repository import SubmissionRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _load_config(config_path: Optional[str]) -> SyncConfig:
    config = load_sync_config(config_path)
    configure_logging(config.logging.level, config.logging.json)
    return config


def _date_range(since: Optional[str], until: Optional[str], year: Optional[str]):
    """Resolve --since/--until/--year into an inclusive date range."""
    if year is None:
        return since, until
    if since or until:
        raise ValueError("--year cannot be combined with --since or --until")
    if len(year) != 4 or not year.isdigit():
        raise ValueError("--year must be a four-digit year")
    return f"{year}-01-01", f"{year}-12-31"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """usage-sync CLI."""
    if ctx.invoked_subcommand is None:
        console.print("usage-sync - Use --help to see available commands")


@app.command()
def init(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Initialize the server database."""
    try:
        config = _load_config(config_path)
        initialize_schema(config.server.db_path)
        console.print(f"[green]✓[/] Database initialized at {config.server.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("issue-token")
def issue_token(
    user_id: str = typer.Option(..., "--user-id", help="Identity the token authenticates"),
    username: str = typer.Option(..., "--username", help="Display name of the identity"),
    ttl_days: Optional[int] = typer.Option(None, "--ttl-days", help="Token lifetime, defaults to the config"),
    save: bool = typer.Option(False, "--save", help="Also write the token to the client credentials file"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Issue an API token for an identity."""
    try:
        config = _load_config(config_path)
        repository = SubmissionRepository(config.server.db_path)
        token = repository.create_api_token(
            user_id=user_id,
            username=username,
            ttl_days=ttl_days if ttl_days is not None else config.server.token_ttl_days,
        )
        if save:
            provider = FileCredentialProvider(config.client.credentials_path)
            provider.save(Credentials(token=token.token, username=token.username))
    except Exception as e:
        console.print(f"[red]Error issuing token:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(token.token)
    if token.expires_at:
        console.print(f"[dim]Expires {token.expires_at.isoformat(timespec='seconds')}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command("list-tokens")
def list_tokens(
    user_id: str = typer.Option(..., "--user-id", help="Identity whose tokens to list"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """List the API tokens of an identity."""
    try:
        config = _load_config(config_path)
        tokens = SubmissionRepository(config.server.db_path).list_api_tokens(user_id)
    except Exception as e:
        console.print(f"[red]Error listing tokens:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not tokens:
        console.print(f"[yellow]No tokens for {user_id}.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"API tokens for {user_id}")
    table.add_column("ID", justify="right")
    table.add_column("Token")
    table.add_column("Created")
    table.add_column("Expires")
    table.add_column("Last used")
    for token in tokens:
        table.add_row(
            str(token.id),
            token.masked,
            _format_time(token.created_at),
            _format_time(token.expires_at),
            _format_time(token.last_used_at),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("revoke-token")
def revoke_token(
    token: Optional[str] = typer.Argument(None, help="Token to revoke"),
    token_id: Optional[int] = typer.Option(None, "--id", help="Revoke by id, as shown by list-tokens"),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Owner of the token given by --id"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Revoke an API token so it no longer authenticates."""
    if (token is None) == (token_id is None):
        console.print("[red]Error:[/] Pass either a token or --id")
        sys.exit(EXIT_CODE_FAIL)
    if token_id is not None and not user_id:
        console.print("[red]Error:[/] --id requires --user-id")
        sys.exit(EXIT_CODE_FAIL)

    try:
        config = _load_config(config_path)
        repository = SubmissionRepository(config.server.db_path)
        if token is not None:
            revoked = repository.revoke_api_token(token)
        else:
            revoked = repository.revoke_api_token_by_id(user_id, token_id)
    except Exception as e:
        console.print(f"[red]Error revoking token:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not revoked:
        console.print("[red]Token not found.[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Token revoked")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Run the reconciliation server."""
    import uvicorn

    config = _load_config(config_path)
    initialize_schema(config.server.db_path)
    service = ReconciliationService(
        SubmissionRepository(config.server.db_path),
        mode=config.server.persistence_mode,
        high_cost_warning=config.server.high_cost_warning,
    )
    uvicorn.run(create_app(service), host=host, port=port)


@app.command()
def fingerprints(
    events_path: str = typer.Option(..., "--events", "-e", help="Usage events JSON file"),
    source: Optional[List[str]] = typer.Option(None, "--source", "-s", help="Only include this source"),
    since: Optional[str] = typer.Option(None, "--since", help="Start date (YYYY-MM-DD)"),
    until: Optional[str] = typer.Option(None, "--until", help="End date (YYYY-MM-DD)"),
):
    """Show the local fingerprint of every (date, source)."""
    try:
        cache = AggregateCache(load_usage_events(events_path))
        aggregates = cache.get(since=since, until=until, sources=source or None)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Local fingerprints")
    table.add_column("Date")
    table.add_column("Source")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Fingerprint")

    by_date = {day.date: day for day in aggregates}
    for date, sources in compute_fingerprints(aggregates).items():
        for source_id, fingerprint in sorted(sources.items()):
            breakdown = by_date[date].sources[source_id]
            table.add_row(date, source_id, f"{breakdown.tokens:,}", _format_currency(breakdown.cost), fingerprint)

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def submit(
    events_path: str = typer.Option(..., "--events", "-e", help="Usage events JSON file"),
    source: Optional[List[str]] = typer.Option(None, "--source", "-s", help="Only submit this source"),
    since: Optional[str] = typer.Option(None, "--since", help="Start date (YYYY-MM-DD)"),
    until: Optional[str] = typer.Option(None, "--until", help="End date (YYYY-MM-DD)"),
    year: Optional[str] = typer.Option(None, "--year", help="Only submit this year"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be sent without sending"),
    full: bool = typer.Option(False, "--full", help="Send everything, skipping the diff"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """
    Submit local usage to the server.

    Only (date, source) entries whose fingerprint differs from the server's
    are sent. If the server's fingerprints cannot be fetched, everything is
    sent. Sources deleted locally are never removed from the server.
    """
    try:
        config = _load_config(config_path)
        start, end = _date_range(since, until, year)
        cache = AggregateCache(load_usage_events(events_path))
        aggregates = cache.get(since=start, until=end, sources=source or None)
        credentials = FileCredentialProvider(config.client.credentials_path).load()
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if credentials is None:
        console.print("\n[bold yellow]Not logged in.[/]")
        console.print(f"Save an API token to {config.client.credentials_path} or set USAGE_SYNC_TOKEN.\n")
        sys.exit(EXIT_CODE_FAIL)

    _display_local_summary(aggregates)

    try:
        with UsageSyncClient(
            config.client.api_base_url,
            credentials,
            timeout=config.client.timeout_seconds,
        ) as client:
            outcome = sync_usage(aggregates, client, full=full, dry_run=dry_run)
    except ValidationError as e:
        console.print(f"\n[red]Error:[/] {e.message}")
        for detail in e.details:
            console.print(f"  - {detail}")
        sys.exit(EXIT_CODE_FAIL)
    except UsageSyncError as e:
        console.print(f"\n[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if outcome.status == SyncStatus.NO_DATA:
        console.print("[yellow]No usage data found to submit.[/]")
    elif outcome.status == SyncStatus.UP_TO_DATE:
        console.print("[green]Already up to date![/] No changes to submit.")
    elif outcome.status == SyncStatus.DRY_RUN:
        console.print("[yellow]Dry run - not submitting data.[/]")
        _display_diff(outcome)
    else:
        _display_diff(outcome)
        _display_response(outcome)
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_time(value) -> str:
    return value.isoformat(timespec='seconds') if value else "-"


def _display_local_summary(aggregates):
    console.print("\n[bold]Local data scanned[/bold]")
    console.print("-" * 40)
    if not aggregates:
        return
    sources = sorted({source_id for day in aggregates for source_id in day.sources})
    console.print(f"Date range: {aggregates[0].date} to {aggregates[-1].date}")
    console.print(f"Days: {len(aggregates)}")
    console.print(f"Total tokens: {sum(d.totals.tokens for d in aggregates):,}")
    console.print(f"Total cost: {_format_currency(sum(d.totals.cost for d in aggregates))}")
    console.print(f"Sources: {', '.join(sources)}")


def _display_diff(outcome):
    summary = outcome.payload["summary"]
    if outcome.diff.mode == DiffMode.FULL:
        console.print("\nFirst submission or server unreachable, uploading full data")
    else:
        console.print("\n[bold]Changes detected[/bold]")
    console.print(f"Days in payload: {len(outcome.diff.contributions)}")
    console.print(f"Tokens in payload: {summary['totalTokens']:,}")
    console.print(f"Cost in payload: {_format_currency(summary['totalCost'])}")


def _display_response(outcome):
    metrics = outcome.response.get("metrics", {})
    console.print("\n[green]✓[/] Successfully submitted")
    console.print(f"Submission ID: {outcome.response.get('submissionId')}")
    console.print(f"Total tokens: {metrics.get('totalTokens', 0):,}")
    console.print(f"Total cost: {_format_currency(metrics.get('totalCost', 0))}")
    console.print(f"Active days: {metrics.get('activeDays', 0)}")
    if outcome.diff.mode == DiffMode.DIFF:
        console.print("Mode: incremental (diff-based)")
    if outcome.warnings:
        console.print("\n[bold yellow]Warnings[/]")
        for warning in outcome.warnings:
            console.print(f"  - {warning}")


if __name__ == "__main__":
    app()
