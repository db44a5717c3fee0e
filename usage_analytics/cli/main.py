"""
CLI interface for Usage Analytics.

Provides command-line access to imports and reports.
"""

import sys
from enum import Enum
from typing import Any, Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from usage_analytics.analytics.reports import ReportQuery
from usage_analytics.analytics.service import ReportingService
from usage_analytics.config.loader import DatabaseConfig, Settings, load_settings
from usage_analytics.errors import UsageAnalyticsError
from usage_analytics.ingestion.importer import DataImporter, ImportResult
from usage_analytics.log import configure_logging
from usage_analytics.storage.repository import (
    TransactionRepository,
    UserRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1


class ReportKind(str, Enum):
    SUMMARY = "summary"
    MODELS = "models"
    REGIONS = "regions"
    DEPARTMENTS = "departments"
    COMPANIES = "companies"
    DAILY = "daily"
    MONTHLY = "monthly"
    TOKENS = "tokens"
    TOP_USERS = "top-users"


_REPORT_TITLES = {
    ReportKind.SUMMARY: "Summary",
    ReportKind.MODELS: "Cost by Model",
    ReportKind.REGIONS: "Usage by Region",
    ReportKind.DEPARTMENTS: "Usage by Department",
    ReportKind.COMPANIES: "Usage by Company",
    ReportKind.DAILY: "Daily Trend",
    ReportKind.MONTHLY: "Monthly Trend",
    ReportKind.TOKENS: "Token Distribution",
    ReportKind.TOP_USERS: "Top Users",
}


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML settings file"
    ),
    db: Optional[str] = typer.Option(
        None, "--db", help="SQLite database path (overrides config)"
    ),
):
    """Usage Analytics CLI."""
    try:
        settings = load_settings(config) if config else Settings()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db:
        settings = Settings(
            database=DatabaseConfig(path=db, timeout_seconds=settings.database.timeout_seconds),
            ingestion=settings.ingestion,
            reports=settings.reports,
            logging=settings.logging,
        )
    configure_logging(settings.logging.level, settings.logging.json)
    ctx.obj = settings
    if ctx.invoked_subcommand is None:
        console.print("Usage Analytics - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Create the users and transactions tables."""
    db = _settings(ctx).database
    try:
        initialize_schema(db.path, db.timeout_seconds)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except UsageAnalyticsError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _importer(settings: Settings) -> DataImporter:
    db = settings.database
    initialize_schema(db.path, db.timeout_seconds)
    return DataImporter(
        users=UserRepository(db.path, db.timeout_seconds),
        transactions=TransactionRepository(db.path, db.timeout_seconds),
        batch_size=settings.ingestion.batch_size,
        max_workers=settings.ingestion.max_workers,
    )


def _service(settings: Settings) -> ReportingService:
    db = settings.database
    initialize_schema(db.path, db.timeout_seconds)
    return ReportingService.from_settings(settings)


def _print_import(label: str, result: ImportResult) -> None:
    status = "[yellow]cancelled[/]" if result.cancelled else "[green]✓[/]"
    console.print(f"{status} {label}: {result.imported} imported, {result.errors} errors")


@app.command("import-users")
def import_users(ctx: typer.Context, path: str = typer.Argument(..., help="users.csv path")):
    """Upsert users from a CSV export."""
    try:
        result = _importer(_settings(ctx)).import_users(path)
    except UsageAnalyticsError as e:
        console.print(f"[red]Import failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    _print_import("Users", result)
    sys.exit(EXIT_CODE_OK)


@app.command("import-transactions")
def import_transactions(
    ctx: typer.Context, path: str = typer.Argument(..., help="transactions.csv path")
):
    """Load transactions from a CSV export."""
    try:
        result = _importer(_settings(ctx)).import_transactions(path)
    except UsageAnalyticsError as e:
        console.print(f"[red]Import failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    _print_import("Transactions", result)
    sys.exit(EXIT_CODE_OK)


@app.command("import-all")
def import_all(
    ctx: typer.Context,
    users_path: str = typer.Argument(..., help="users.csv path"),
    transactions_path: str = typer.Argument(..., help="transactions.csv path"),
):
    """Import users, then transactions."""
    try:
        result = _importer(_settings(ctx)).import_all(users_path, transactions_path)
    except UsageAnalyticsError as e:
        console.print(f"[red]Import failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    _print_import("Users", result.users)
    _print_import("Transactions", result.transactions)
    sys.exit(EXIT_CODE_OK)


def _run_report(service: ReportingService, kind: ReportKind, query: ReportQuery) -> Any:
    return {
        ReportKind.SUMMARY: service.get_summary,
        ReportKind.MODELS: service.get_cost_by_model,
        ReportKind.REGIONS: service.get_usage_by_region,
        ReportKind.DEPARTMENTS: service.get_usage_by_department,
        ReportKind.COMPANIES: service.get_usage_by_company,
        ReportKind.DAILY: service.get_daily_trends,
        ReportKind.MONTHLY: service.get_monthly_trends,
        ReportKind.TOKENS: service.get_token_distribution,
        ReportKind.TOP_USERS: service.get_top_users,
    }[kind](query)


@app.command()
def report(
    ctx: typer.Context,
    kind: ReportKind = typer.Argument(..., help="Report to compute"),
    start: Optional[str] = typer.Option(None, "--start", "-s", help="Start date, YYYY-MM-DD"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="End date, YYYY-MM-DD"),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="Region, or 'all'"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Top users to show"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
):
    """Compute one report over the stored transactions."""
    query = ReportQuery(start_date=start, end_date=end, region=region, limit=limit)
    try:
        result = _run_report(_service(_settings(ctx)), kind, query)
    except UsageAnalyticsError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    rows = [result.to_dict()] if kind == ReportKind.SUMMARY else [r.to_dict() for r in result]
    if as_json:
        console.print_json(data=rows[0] if kind == ReportKind.SUMMARY else rows)
    else:
        _display_rows(_REPORT_TITLES[kind], rows)
    sys.exit(EXIT_CODE_OK)


@app.command()
def regions(ctx: typer.Context):
    """List the distinct user regions."""
    try:
        values = _service(_settings(ctx)).get_regions()
    except UsageAnalyticsError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    for value in values:
        console.print(value)
    sys.exit(EXIT_CODE_OK)


@app.command("date-range")
def date_range(ctx: typer.Context):
    """Show the first and last transaction dates."""
    try:
        result = _service(_settings(ctx)).get_date_range()
    except UsageAnalyticsError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"{result.min_date or '-'} → {result.max_date or '-'}")
    sys.exit(EXIT_CODE_OK)


def _format_value(key: str, value: Any) -> str:
    """Format a report cell for display."""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if key.lower().endswith("cost") or key == "avgCostPerConversation":
        places = 4 if key == "avgCostPerConversation" else 2
        return f"${value:,.{places}f}"
    if isinstance(value, int):
        return f"{value:,}"
    return str(value)


def _display_rows(title: str, rows: List[Dict[str, Any]]) -> None:
    """Display report rows as a table."""
    if not rows:
        console.print(f"\n[dim]No data for {title}.[/]")
        return
    table = Table(title=title)
    for column in rows[0]:
        table.add_column(column)
    for row in rows:
        table.add_row(*(_format_value(key, value) for key, value in row.items()))
    console.print(table)


if __name__ == "__main__":
    app()
