"""
CLI interface for AI Usage Meter.

Operator access to schemas, per-account usage, manual backfill,
cost analytics and ledger retention.
"""

import logging
import sys
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_meter.config.loader import (
    MeteringConfig,
    default_metering_config,
    load_metering_config,
)
from usage_meter.core import cycles
from usage_meter.core.engine import MeteringEngine
from usage_meter.core.entitlement import PlanState, PlanType
from usage_meter.core.errors import MeteringError
from usage_meter.core.retention import RetentionJob
from usage_meter.storage.factory import build_cost_ledger, build_engine, build_retention_job
from usage_meter.storage.ledger import SqliteCostLedger
from usage_meter.storage.models import OperationKind
from usage_meter.storage.sqlite_store import SqliteUsageStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _config(ctx: typer.Context) -> MeteringConfig:
    return ctx.obj["config"]


def _engine(ctx: typer.Context) -> MeteringEngine:
    return build_engine(_config(ctx))


def _format_currency(amount: Decimal) -> str:
    """Format dollar amounts to the micro-dollar."""
    return f"${amount:,.6f}"


def _format_limit(value: int) -> str:
    return "unlimited" if value == -1 else str(value)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML metering configuration"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """AI Usage Meter CLI."""
    _setup_logging(verbose)
    try:
        loaded = load_metering_config(config) if config else default_metering_config()
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = {"config": loaded}

    if ctx.invoked_subcommand is None:
        console.print("AI Usage Meter - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the SQLite schemas for the configured backends."""
    engine = _engine(ctx)
    try:
        if isinstance(engine.store, SqliteUsageStore):
            engine.store.initialize_schema()
        if isinstance(engine.ledger, SqliteCostLedger):
            engine.ledger.initialize_schema()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except MeteringError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show configured backends and the cost ceiling."""
    config = _config(ctx)
    ceiling = config.cost_ceiling

    table = Table(title="AI Usage Meter")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Environment", config.environment.value)
    table.add_row("Usage store", config.storage.backend.value)
    table.add_row("Cost ledger", config.ledger.backend.value)
    table.add_row("Default model", config.pricing.default_model)
    table.add_row(
        "Monthly cost ceiling",
        _format_currency(ceiling.max_monthly_cost) if ceiling.max_monthly_cost is not None else "disabled"
    )
    table.add_row("Warning ratio", str(ceiling.warning_ratio))
    table.add_row("Trial grants unlimited", str(config.trial_grants_unlimited))
    console.print(table)


@app.command()
def usage(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account to report on"),
    plan: str = typer.Option("free", "--plan", "-p", help="Plan type: free or monthly"),
    active: bool = typer.Option(False, "--active", help="Treat the paid period as active for 30 days"),
    trial_days: int = typer.Option(0, "--trial-days", help="Days left in an active trial"),
    admin: bool = typer.Option(False, "--admin", help="Report as an admin account")
):
    """Show an account's usage, limits and renewal dates."""
    now = cycles.utcnow()
    try:
        plan_state = PlanState(
            plan_type=PlanType(plan.lower()),
            subscription_active=active,
            current_period_end=now + timedelta(days=30) if active else None,
            trial_ends_at=now + timedelta(days=trial_days) if trial_days > 0 else None,
            is_admin=admin,
        )
        summary = _engine(ctx).get_usage_summary(account_id, plan_state, now)
    except (MeteringError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Usage for {summary.account_id}")
    table.add_column("Metric")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Renews")
    table.add_row(
        "Summaries today",
        str(summary.current_usage["summariesToday"]),
        _format_limit(summary.limits["dailySummaries"]),
        cycles.to_iso(summary.renewal_dates["daily"]),
    )
    table.add_row(
        "Chat queries this cycle",
        str(summary.current_usage["chatQueriesThisCycle"]),
        _format_limit(summary.limits["chatQueriesPerCycle"]),
        cycles.to_iso(summary.renewal_dates["chatCycle"]),
    )
    table.add_row(
        "Cost this month",
        _format_currency(summary.cost.used),
        _format_currency(summary.cost.limit) if summary.cost.limit is not None else "unlimited",
        cycles.to_iso(summary.renewal_dates["monthly"]),
    )
    console.print(table)
    console.print(
        f"Premium: {summary.is_premium}  Trial: {summary.is_in_trial}  "
        f"Days remaining: {summary.days_remaining}"
    )


@app.command()
def record(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account that ran the operation"),
    kind: str = typer.Argument(..., help="Operation kind, e.g. summary_generated"),
    model: str = typer.Option(..., "--model", "-m", help="Model reported by the provider"),
    input_tokens: int = typer.Option(..., "--input", "-i", help="Prompt tokens"),
    output_tokens: int = typer.Option(..., "--output", "-o", help="Completion tokens"),
    cached: bool = typer.Option(False, "--cached", help="Result was served from cache")
):
    """Record a completed operation (manual backfill)."""
    try:
        receipt = _engine(ctx).record_completion(
            account_id,
            OperationKind.parse(kind),
            model,
            input_tokens,
            output_tokens,
            cached=cached,
        )
    except (MeteringError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Recorded {kind} for {account_id}: {_format_currency(receipt.cost)}")
    if receipt.warning:
        console.print(f"[yellow]Warning:[/] {receipt.warning}")
        sys.exit(EXIT_CODE_FAIL)
    if not receipt.ledger_recorded:
        console.print("[yellow]Warning:[/] ledger entry could not be written")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def analytics(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", "-d", help="Trailing window in days"),
    limit: int = typer.Option(10, "--limit", "-l", help="Number of top spenders")
):
    """Show cost analytics over a trailing window."""
    try:
        report = _engine(ctx).get_cost_analytics(PlanState(is_admin=True), window_days=days, top_limit=limit)
    except (MeteringError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]AI Cost Analytics[/bold] (last {days} days)")
    console.print("-" * 40)
    console.print(f"Total cost: {_format_currency(report.total_cost)}")
    console.print(f"Operations: {report.total_operations}")
    console.print(f"Average cost: {_format_currency(report.average_cost)}")
    console.print(f"Cache hit rate: {report.cache_hit_rate:.1f}%")

    if report.total_operations == 0:
        console.print("\n[dim]No ledger entries in this window.[/]")
        return

    spenders = Table(title="Top spenders")
    spenders.add_column("Account")
    spenders.add_column("Cost", justify="right")
    spenders.add_column("Operations", justify="right")
    spenders.add_column("Cache hit rate", justify="right")
    for row in report.top_spenders:
        spenders.add_row(
            row.account_id,
            _format_currency(row.total_cost),
            str(row.total_operations),
            f"{row.cache_hit_rate:.1f}%"
        )
    console.print(spenders)

    models = Table(title="By model")
    models.add_column("Model")
    models.add_column("Cost", justify="right")
    models.add_column("Operations", justify="right")
    models.add_column("Tokens", justify="right")
    for row in report.by_model:
        models.add_row(
            row.model,
            _format_currency(row.total_cost),
            str(row.count),
            str(row.input_tokens + row.output_tokens)
        )
    console.print(models)

    daily = Table(title="Daily cost")
    daily.add_column("Day")
    daily.add_column("Cost", justify="right")
    daily.add_column("Operations", justify="right")
    daily.add_column("Accounts", justify="right")
    for row in report.daily:
        daily.add_row(row.day, _format_currency(row.cost), str(row.operations), str(row.unique_accounts))
    console.print(daily)


@app.command()
def cleanup(
    ctx: typer.Context,
    older_than_days: Optional[int] = typer.Option(
        None,
        "--older-than-days",
        help="Override the configured retention age"
    ),
    max_cost: Optional[float] = typer.Option(
        None,
        "--max-cost",
        help="Override the configured cost threshold"
    )
):
    """Run one ledger retention pass."""
    config = _config(ctx)
    try:
        job = build_retention_job(config, build_cost_ledger(config))
        if older_than_days is not None or max_cost is not None:
            job = RetentionJob(
                job.ledger,
                max_age_days=older_than_days if older_than_days is not None else job.max_age_days,
                max_cost_threshold=Decimal(str(max_cost)) if max_cost is not None else job.max_cost_threshold,
                interval_hours=job.interval_hours,
            )
        deleted = job.run_once()
    except (MeteringError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Deleted {deleted} ledger entries")


if __name__ == "__main__":
    app()
