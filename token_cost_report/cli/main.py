"""
CLI interface for token-cost-report.

Thin wiring of configuration, the report pipeline and rich tables.
"""

import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from token_cost_report.config.loader import ReportConfig, load_report_config
from token_cost_report.core.aggregation import SortOrder, totals
from token_cost_report.core.burn_rate import BurnRateForecaster, BurnRateSnapshot, LimitForecast, LimitState
from token_cost_report.core.errors import FatalConfigError
from token_cost_report.core.pipeline import ReportOptions, UsageReport, build_report
from token_cost_report.core.resolver import PricingResolver
from token_cost_report.ingest.normalizer import EventFilter
from token_cost_report.storage.pricing_cache import PricingCache

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_ROOT = Path.home() / ".claude" / "projects"
DATE_FORMATS = ["%Y-%m-%d", "%Y%m%d"]

RootOption = typer.Option(DEFAULT_ROOT, "--root", "-r", help="Directory holding the usage logs")
ConfigOption = typer.Option(None, "--config", "-c", help="YAML report configuration")
SinceOption = typer.Option(None, "--since", formats=DATE_FORMATS, help="First date to include")
UntilOption = typer.Option(None, "--until", formats=DATE_FORMATS, help="Last date to include")
ModelOption = typer.Option(None, "--model", "-m", help="Only include matching models (name, family or alias)")
AscOption = typer.Option(False, "--asc", help="Sort ascending instead of descending")
NoCacheOption = typer.Option(False, "--no-cache", help="Ignore and do not write the pricing cache")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """token-cost-report CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    if ctx.invoked_subcommand is None:
        console.print("token-cost-report - Use --help to see available commands")


def _load_config(config_path: Optional[Path]) -> ReportConfig:
    if config_path is None:
        return ReportConfig()
    return load_report_config(str(config_path))


def _run(
    root: Path,
    config_path: Optional[Path],
    since: Optional[datetime],
    until: Optional[datetime],
    model: Optional[str],
    no_cache: bool,
) -> Tuple[UsageReport, ReportConfig]:
    """Build a report or exit with EXIT_CODE_FAIL on a fatal problem."""
    try:
        config = _load_config(config_path)
        event_filter = EventFilter(
            since=since.date() if since else None,
            until=until.date() if until else None,
            model=model,
        )
        resolver = PricingResolver(
            cache=None if no_cache else PricingCache(),
            overrides=config.pricing,
            default_pricing=config.default_pricing,
        )
        options = ReportOptions(event_filter=event_filter, tz=config.tzinfo, max_workers=config.workers)
        report = build_report(root, resolver, options)
    except FatalConfigError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    return report, config


def _order(asc: bool) -> SortOrder:
    return SortOrder.ASC if asc else SortOrder.DESC


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_tokens(count) -> str:
    return f"{int(count):,}"


def _token_table(title: str, first_column: str) -> Table:
    table = Table(title=title)
    table.add_column(first_column)
    for name in ("Input", "Output", "Cache Write", "Cache Read", "Total Tokens"):
        table.add_column(name, justify="right")
    table.add_column("Cost", justify="right")
    return table


def _token_cells(row) -> List[str]:
    usage = row.usage
    return [
        _format_tokens(usage.input_tokens),
        _format_tokens(usage.output_tokens),
        _format_tokens(usage.cache_creation_tokens),
        _format_tokens(usage.cache_read_tokens),
        _format_tokens(usage.total_tokens),
        _format_currency(row.total_cost),
    ]


def _add_totals_row(table: Table, rows) -> None:
    table.add_section()
    table.add_row("[bold]Total[/bold]", *_token_cells(totals(rows)))


def _print_diagnostics(report: UsageReport) -> None:
    diagnostics = report.diagnostics
    if diagnostics.lines_skipped or diagnostics.files_skipped or diagnostics.events_unpriced:
        console.print(
            f"[dim]{diagnostics.files_scanned} files, {diagnostics.events_accepted} events; "
            f"skipped {diagnostics.files_skipped} files and {diagnostics.lines_skipped} lines; "
            f"{diagnostics.events_unpriced} unpriced events[/]"
        )
    for warning in diagnostics.warnings:
        console.print(f"[yellow]Warning:[/] {warning}")


@app.command()
def daily(
    root: Path = RootOption,
    config: Optional[Path] = ConfigOption,
    since: Optional[datetime] = SinceOption,
    until: Optional[datetime] = UntilOption,
    model: Optional[str] = ModelOption,
    asc: bool = AscOption,
    no_cache: bool = NoCacheOption,
):
    """Show usage and cost per calendar date."""
    report, _ = _run(root, config, since, until, model, no_cache)
    rows = report.daily_report(_order(asc))
    table = _token_table("Daily Usage", "Date")
    for row in rows:
        table.add_row(row.date.isoformat(), *_token_cells(row))
    _add_totals_row(table, rows)
    console.print(table)
    _print_diagnostics(report)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def monthly(
    root: Path = RootOption,
    config: Optional[Path] = ConfigOption,
    since: Optional[datetime] = SinceOption,
    until: Optional[datetime] = UntilOption,
    model: Optional[str] = ModelOption,
    asc: bool = AscOption,
    no_cache: bool = NoCacheOption,
):
    """Show usage and cost per month."""
    report, _ = _run(root, config, since, until, model, no_cache)
    rows = report.monthly_report(_order(asc))
    table = _token_table("Monthly Usage", "Month")
    table.add_column("Active Days", justify="right")
    table.add_column("Avg/Day", justify="right")
    for row in rows:
        table.add_row(
            f"{row.month_name} {row.year}",
            *_token_cells(row),
            str(row.active_days),
            _format_currency(row.avg_daily_cost),
        )
    table.add_section()
    table.add_row("[bold]Total[/bold]", *_token_cells(totals(rows)), "", "")
    console.print(table)
    _print_diagnostics(report)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def session(
    root: Path = RootOption,
    config: Optional[Path] = ConfigOption,
    since: Optional[datetime] = SinceOption,
    until: Optional[datetime] = UntilOption,
    model: Optional[str] = ModelOption,
    asc: bool = AscOption,
    no_cache: bool = NoCacheOption,
):
    """Show usage and cost per session, most expensive first."""
    report, _ = _run(root, config, since, until, model, no_cache)
    rows = report.session_report(_order(asc))
    table = _token_table("Session Usage", "Session")
    table.add_column("Last Activity")
    for row in rows:
        table.add_row(row.session_key, *_token_cells(row), row.last_activity.strftime("%Y-%m-%d %H:%M UTC"))
    table.add_section()
    table.add_row("[bold]Total[/bold]", *_token_cells(totals(rows)), "")
    console.print(table)
    _print_diagnostics(report)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def blocks(
    root: Path = RootOption,
    config: Optional[Path] = ConfigOption,
    since: Optional[datetime] = SinceOption,
    until: Optional[datetime] = UntilOption,
    model: Optional[str] = ModelOption,
    no_cache: bool = NoCacheOption,
):
    """Show usage per five-hour UTC billing block."""
    report, _ = _run(root, config, since, until, model, no_cache)
    rows = report.blocks
    table = _token_table("Billing Blocks (UTC)", "Block")
    table.add_column("Sessions", justify="right")
    for row in rows:
        table.add_row(f"{row.date.isoformat()} {row.label}", *_token_cells(row), str(row.session_count))
    table.add_section()
    table.add_row("[bold]Total[/bold]", *_token_cells(totals(rows)), "")
    console.print(table)

    peak = report.peak_block()
    if peak is not None:
        console.print(f"Peak block: {peak.date.isoformat()} {peak.label} ({_format_currency(peak.total_cost)})")
        console.print(f"Average per active block: {_format_currency(report.average_block_cost())}")
    _print_diagnostics(report)
    sys.exit(EXIT_CODE_PASS)


def _format_limit(name: str, forecast: LimitForecast) -> Optional[str]:
    if forecast.state == LimitState.NO_LIMIT:
        return None
    if forecast.state == LimitState.EXCEEDED:
        return f"[red]{name} limit reached[/]"
    if forecast.state == LimitState.UNBOUNDED:
        return f"{name} limit: not reached at the current rate"
    line = f"{name} limit in {forecast.hours_remaining:,.1f} active hours ({forecast.days_until_limit} days)"
    if forecast.limit_date is not None:
        line += f", around {forecast.limit_date.isoformat()}"
    return line


def _print_snapshot(title: str, snapshot: BurnRateSnapshot) -> None:
    console.print(f"\n[bold]{title}[/bold]")
    if not snapshot.has_data:
        console.print("[dim]No usage in this window.[/]")
    else:
        console.print(f"Tokens/minute: {snapshot.tokens_per_minute:,.1f}")
        console.print(f"Tokens/hour: {snapshot.tokens_per_hour:,.0f}")
        console.print(f"Cost/hour: {_format_currency(snapshot.cost_per_hour)}")
        console.print(
            f"Projected daily: {_format_tokens(snapshot.projected_daily_tokens)} tokens, "
            f"{_format_currency(snapshot.projected_daily_cost)}"
        )
        console.print(
            f"Projected monthly: {_format_tokens(snapshot.projected_monthly_tokens)} tokens, "
            f"{_format_currency(snapshot.projected_monthly_cost)}"
        )
    percent = "" if snapshot.trend_percent is None else f" ({snapshot.trend_percent:+.1f}%)"
    console.print(f"Trend: {snapshot.trend.value}{percent}")
    for line in (_format_limit("Token", snapshot.token_limit), _format_limit("Cost", snapshot.cost_limit)):
        if line:
            console.print(line)


@app.command(name="burn-rate")
def burn_rate(
    root: Path = RootOption,
    config: Optional[Path] = ConfigOption,
    model: Optional[str] = ModelOption,
    no_cache: bool = NoCacheOption,
):
    """Show consumption rate and projections for the last 24 hours and 7 days."""
    report, report_config = _run(root, config, None, None, model, no_cache)
    forecaster = BurnRateForecaster(report_config.forecast, report_config.tzinfo)
    now = datetime.now(timezone.utc)
    windows = [("Last 24 hours", timedelta(hours=24)), ("Last 7 days", timedelta(days=7))]
    snapshots = forecaster.snapshots(report.daily, report.blocks, now, [w for _, w in windows])
    for (title, _), snapshot in zip(windows, snapshots):
        _print_snapshot(title, snapshot)
    _print_diagnostics(report)
    sys.exit(EXIT_CODE_PASS)


@app.command(name="cache-status")
def cache_status():
    """Show the pricing cache location, validity and age."""
    status = PricingCache().status()
    console.print(f"Path: {status.path}")
    console.print(f"State: {status.state.value}")
    if status.last_updated is not None:
        console.print(f"Last updated: {status.last_updated.isoformat()}")
        console.print(f"Age: {status.age}")
        console.print(f"Entries: {status.entry_count}")
    sys.exit(EXIT_CODE_PASS)


@app.command(name="cache-clear")
def cache_clear():
    """Delete the pricing cache."""
    if PricingCache().clear():
        console.print("[green]✓[/] Pricing cache cleared")
        sys.exit(EXIT_CODE_PASS)
    console.print("[red]Could not clear the pricing cache[/]")
    sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
