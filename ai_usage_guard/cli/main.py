"""
CLI interface for AI Usage Guard.

Provides command-line access to syncing, recording, cost and analysis.
"""

import logging
import sys
from datetime import date, datetime
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_usage_guard.config.loader import AppConfig, load_config
from ai_usage_guard.core.alerts import Notification, check_alerts
from ai_usage_guard.core.analytics import (
    DAY_NAMES,
    HOURS_PER_DAY,
    compute_deltas,
    compute_kde,
    efficiency_ratios,
    filter_deltas_by_date,
    group_by_time_slot,
    heatmap_grid,
)
from ai_usage_guard.core.pricing import CostSummary, cost_points, estimate, estimate_all
from ai_usage_guard.core.usage_payload import UsagePayloadError, parse_usage_payload
from ai_usage_guard.export.analysis import summarize, write_analysis_json
from ai_usage_guard.storage.backup import DEFAULT_RETENTION_DAYS, backup_database
from ai_usage_guard.storage.models import Window
from ai_usage_guard.storage.state_store import AlertStateRepository
from ai_usage_guard.storage.token_store import TokenRecordRepository
from ai_usage_guard.storage.usage_store import UsageSnapshotRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Usage Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("AI Usage Guard - Use --help to see available commands")


def _load(config_path: Optional[str]) -> AppConfig:
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def get_token_repository(config: AppConfig) -> TokenRecordRepository:
    return TokenRecordRepository(config.storage.token_db)


def get_usage_repository(config: AppConfig) -> UsageSnapshotRepository:
    return UsageSnapshotRepository(config.storage.usage_db)


def get_state_repository(config: AppConfig) -> AlertStateRepository:
    return AlertStateRepository(config.storage.state_db)


@app.command()
def init(config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")):
    """Initialize the AI Usage Guard databases."""
    config = _load(config_path)
    try:
        get_token_repository(config).initialize_schema()
        get_usage_repository(config).initialize_schema()
        get_state_repository(config).initialize_schema()
        console.print("[green]✓[/] Databases initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing databases:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def sync(
    directories: Optional[List[str]] = typer.Argument(
        None, help="Log directories to scan (defaults to the configured ones)"
    ),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
    rebuild: bool = typer.Option(False, "--rebuild", help="Discard stored records and re-read every file"),
):
    """Ingest JSONL usage logs into the token store."""
    config = _load(config_path)
    backup_database(config.storage.token_db)
    repository = get_token_repository(config)
    if rebuild:
        repository.clear()

    result = repository.sync(directories or list(config.logs.directories))
    if not result.ok:
        console.print(f"[red]Sync failed:[/] {result.error}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Scanned {result.files_scanned} files, "
        f"processed {result.files_processed}, upserted {result.records_upserted} records"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def record(
    payload_file: str = typer.Argument(..., help="Usage payload JSON file, or - for stdin"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
):
    """Record a usage poll and evaluate alerts against it."""
    config = _load(config_path)
    try:
        if payload_file == "-":
            text = sys.stdin.read()
        else:
            with open(payload_file, 'r', encoding='utf-8') as f:
                text = f.read()
        snapshot = parse_usage_payload(text)
    except (OSError, UsagePayloadError) as e:
        console.print(f"[red]Error reading usage payload:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    backup_database(config.storage.usage_db)
    usage_repository = get_usage_repository(config)
    if not usage_repository.save(snapshot):
        console.print("[yellow]Usage snapshot was not stored[/]")

    notifications = check_alerts(
        snapshot,
        config.alerts,
        get_state_repository(config),
        daily_usage=usage_repository.load_daily_usage,
    )
    _display_snapshot(snapshot.short_window_percent, snapshot.long_window_percent)
    _display_notifications(notifications)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def cost(
    hours: Optional[float] = typer.Option(
        None, "--hours", "-h", help="Only include the last N hours"
    ),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
):
    """Show estimated spend from the token store."""
    config = _load(config_path)
    records = get_token_repository(config).load_all()
    try:
        summary = estimate(records, hours) if hours is not None else estimate_all(records)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if summary.record_count == 0:
        console.print("\n[bold yellow]No token usage records found[/]")
        console.print("Run `ai-usage-guard sync` to ingest usage logs.\n")
        sys.exit(EXIT_CODE_PASS)

    _display_cost_summary(summary, hours)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def analyze(
    window: str = typer.Option("short", "--window", "-w", help="Window to analyze: short or long"),
    date_from: Optional[str] = typer.Option(None, "--from", help="First local date (YYYY-MM-DD)"),
    date_to: Optional[str] = typer.Option(None, "--to", help="Last local date (YYYY-MM-DD)"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
):
    """Correlate spend with usage-window consumption."""
    config = _load(config_path)
    windows = {"short": Window.SHORT, "long": Window.LONG}
    if window not in windows:
        console.print(f"[red]Error:[/] window must be one of: {list(windows)}")
        sys.exit(EXIT_CODE_FAIL)

    history = get_usage_repository(config).load_all_history()
    records = get_token_repository(config).load_all()
    deltas = compute_deltas(history, cost_points(records), windows[window])

    if date_from or date_to:
        try:
            start = datetime.strptime(date_from, "%Y-%m-%d").date() if date_from else date.min
            end = datetime.strptime(date_to, "%Y-%m-%d").date() if date_to else date.max
            deltas = filter_deltas_by_date(deltas, start, end)
        except ValueError as e:
            console.print(f"[red]Error:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)

    stats = summarize(history, records)
    console.print("\n[bold]Usage Analysis[/bold]")
    console.print("-" * 40)
    console.print(f"Usage records: {stats.usage_record_count}")
    console.print(f"Token records: {stats.token_record_count:,}")
    console.print(f"Total est. cost: {_format_currency(stats.total_cost)}")
    console.print(f"Usage span: {stats.usage_span_hours:.1f}h")
    console.print(f"Intervals with spend: {len(deltas)}")

    if not deltas:
        console.print("\n[dim]Not enough correlated data for efficiency analysis.[/]")
        sys.exit(EXIT_CODE_PASS)

    kde = compute_kde(efficiency_ratios(deltas))
    if kde.peak is not None:
        console.print(f"Most common efficiency: {kde.peak:.1f} %/$")

    _display_time_slots(deltas)
    _display_heatmap(heatmap_grid(deltas))
    sys.exit(EXIT_CODE_PASS)


@app.command()
def export(
    output: str = typer.Argument(..., help="Destination JSON file"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
):
    """Export usage history and token records for rendering."""
    config = _load(config_path)
    history = get_usage_repository(config).load_all_history()
    records = get_token_repository(config).load_all()
    try:
        path = write_analysis_json(output, history, records)
    except OSError as e:
        console.print(f"[red]Error writing export:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Exported {len(history)} usage and {len(records)} token records to {path}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def backup(
    retention_days: int = typer.Option(
        DEFAULT_RETENTION_DAYS, "--retention-days", help="Days of dated backups to keep"
    ),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
):
    """Take today's backup of every database."""
    config = _load(config_path)
    if retention_days < 0:
        console.print("[red]Error:[/] retention days cannot be negative")
        sys.exit(EXIT_CODE_FAIL)

    for db_path in (config.storage.token_db, config.storage.usage_db, config.storage.state_db):
        path = backup_database(db_path, retention_days)
        if path is not None:
            console.print(f"[green]✓[/] Backed up {db_path} to {path.name}")
        else:
            console.print(f"[dim]No new backup for {db_path}[/]")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_percent(value: Optional[float]) -> str:
    return f"{value:.0f}%" if value is not None else "-"


def _display_snapshot(short_percent: Optional[float], long_percent: Optional[float]) -> None:
    console.print(
        f"Short window: {_format_percent(short_percent)}  "
        f"Long window: {_format_percent(long_percent)}"
    )


def _display_notifications(notifications: List[Notification]) -> None:
    for notification in notifications:
        console.print(f"[bold yellow]{notification.title}[/] {notification.body}")


def _display_cost_summary(summary: CostSummary, hours: Optional[float]) -> None:
    """Display a cost summary in a clean, financial format."""
    scope = f"last {hours:g}h" if hours is not None else "all time"
    console.print(f"\n[bold]Estimated Cost ({scope})[/bold]")
    console.print("-" * 40)
    console.print(f"Total: {_format_currency(summary.total_cost)} over {summary.record_count:,} requests")
    if summary.oldest_record and summary.newest_record:
        console.print(f"From {summary.oldest_record:%Y-%m-%d %H:%M} to {summary.newest_record:%Y-%m-%d %H:%M} UTC")

    table = Table(show_header=True)
    table.add_column("Token type")
    table.add_column("Tokens", justify="right")
    breakdown = summary.token_breakdown
    table.add_row("Input", f"{breakdown.input_tokens:,}")
    table.add_row("Output", f"{breakdown.output_tokens:,}")
    table.add_row("Cache read", f"{breakdown.cache_read_tokens:,}")
    table.add_row("Cache write", f"{breakdown.cache_creation_tokens:,}")
    table.add_row("Total", f"{breakdown.total_tokens:,}")
    console.print(table)


def _display_time_slots(deltas) -> None:
    table = Table(title="Efficiency by time of day", show_header=True)
    table.add_column("Slot")
    table.add_column("Intervals", justify="right")
    table.add_column("Δ%", justify="right")
    table.add_column("Cost", justify="right")
    for slot, slot_deltas in group_by_time_slot(deltas).items():
        total_delta = sum(d.percent_delta for d in slot_deltas)
        total_cost = sum(d.interval_cost_usd for d in slot_deltas)
        table.add_row(slot.label, str(len(slot_deltas)), f"{total_delta:.1f}", _format_currency(total_cost))
    console.print(table)


def _display_heatmap(grid) -> None:
    table = Table(title="Efficiency heatmap (Δ% / $)", show_header=True)
    table.add_column("")
    for hour in range(HOURS_PER_DAY):
        table.add_column(str(hour), justify="right")
    for day, row in enumerate(grid):
        table.add_row(DAY_NAMES[day], *[f"{ratio:.0f}" if ratio is not None else "" for ratio in row])
    console.print(table)


if __name__ == "__main__":
    app()
