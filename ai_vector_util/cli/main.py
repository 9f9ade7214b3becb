"""
CLI interface for AI Vector Util.

Maintenance and monitoring commands, meant to be run by operators or a
scheduler (daily aggregation, retention cleanup).
"""

import sys
from datetime import date
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from ai_vector_util.config.loader import (
    ServiceConfig,
    default_service_config,
    load_service_config,
)
from ai_vector_util.core.metrics import MetricsAggregator
from ai_vector_util.sdk.facade import HealthStatus, build_facade
from ai_vector_util.storage.registry import ModelRegistry
from ai_vector_util.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to YAML service configuration (built-in defaults when omitted)"
)


def _load_config(config_path: Optional[str]) -> ServiceConfig:
    if config_path is None:
        return default_service_config()
    return load_service_config(config_path)


def _format_ms(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also write logs to this file")
):
    """AI Vector Util CLI."""
    if verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")
    if log_file:
        logger.add(log_file, rotation="10 MB", level="INFO")
    if ctx.invoked_subcommand is None:
        console.print("AI Vector Util - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = CONFIG_OPTION):
    """Create the database schema and register the configured models."""
    try:
        service_config = _load_config(config)
        initialize_schema(service_config.db_path)
        registry = ModelRegistry(service_config.db_path)
        for name, model_config in service_config.models.items():
            registry.register(model_config.to_descriptor(name))
            console.print(f"[green]✓[/] Registered model {name}")
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def models(
    config: Optional[str] = CONFIG_OPTION,
    active_only: bool = typer.Option(False, "--active-only", "-a", help="Hide inactive models")
):
    """List registered models with their usage statistics."""
    try:
        service_config = _load_config(config)
        descriptors = ModelRegistry(service_config.db_path).list_models(active_only=active_only)
        if not descriptors:
            console.print("[yellow]No models registered.[/] Run `ai-vector-util init` first.")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title="Registered Models")
        table.add_column("Model")
        table.add_column("Type")
        table.add_column("Dimensions", justify="right")
        table.add_column("Max tokens", justify="right")
        table.add_column("Active")
        table.add_column("Calls", justify="right")
        table.add_column("Avg ms", justify="right")
        table.add_column("Last used")
        for d in descriptors:
            table.add_row(
                d.model_name,
                d.model_type.value,
                str(d.vector_dimensions),
                str(d.max_tokens),
                "Y" if d.is_active else "N",
                str(d.usage_count),
                _format_ms(d.avg_latency_ms),
                d.last_used_date.isoformat(timespec="seconds") if d.last_used_date else "-",
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _set_active(model: str, active: bool, config: Optional[str]) -> None:
    try:
        service_config = _load_config(config)
        if not ModelRegistry(service_config.db_path).set_active(model, active):
            console.print(f"[red]Model not found:[/] {model}")
            sys.exit(EXIT_CODE_FAIL)
        state = "activated" if active else "deactivated"
        console.print(f"[green]✓[/] Model {model.upper()} {state}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def activate(model: str, config: Optional[str] = CONFIG_OPTION):
    """Make a registered model available again."""
    _set_active(model, True, config)


@app.command()
def deactivate(model: str, config: Optional[str] = CONFIG_OPTION):
    """Withdraw a model without deleting its history."""
    _set_active(model, False, config)


@app.command()
def usage(
    config: Optional[str] = CONFIG_OPTION,
    days: int = typer.Option(7, "--days", "-d", help="Days to look back"),
    schema: Optional[str] = typer.Option(None, "--schema", "-s", help="Only this calling schema")
):
    """Show daily usage grouped by operation and model."""
    try:
        service_config = _load_config(config)
        rows = get_repository(service_config.db_path).get_usage_stats(
            calling_schema=schema.upper() if schema else None,
            days_back=days
        )
        if not rows:
            console.print("\n[bold yellow]No usage recorded in this period[/]\n")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title=f"Usage (last {days} days)")
        for column in ("Date", "Operation", "Model", "Calls", "OK", "Failed", "Avg ms", "Tokens"):
            table.add_column(column)
        for row in rows:
            table.add_row(
                row["usage_date"].isoformat(),
                row["operation_type"],
                row["model_name"],
                str(row["total_calls"]),
                str(row["successful_calls"]),
                str(row["failed_calls"]),
                _format_ms(row["avg_latency_ms"]),
                f"{row['total_tokens']:,}",
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def realtime(
    config: Optional[str] = CONFIG_OPTION,
    schema: Optional[str] = typer.Option(None, "--schema", "-s", help="Only this calling schema")
):
    """Show calls of the last hour grouped by caller, model and operation."""
    try:
        service_config = _load_config(config)
        rows = get_repository(service_config.db_path).get_realtime_usage(
            calling_schema=schema.upper() if schema else None
        )
        if not rows:
            console.print("\n[bold yellow]No calls in the last hour[/]\n")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title="Realtime Usage (last hour)")
        for column in ("Schema", "Model", "Operation", "Calls", "OK", "Failed", "Avg ms", "Last call"):
            table.add_column(column)
        for row in rows:
            table.add_row(
                row["calling_schema"],
                row["model_name"],
                row["operation_type"],
                str(row["calls"]),
                str(row["successful_calls"]),
                str(row["failed_calls"]),
                _format_ms(row["avg_latency_ms"]),
                row["last_call_time"].isoformat(timespec="seconds"),
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def metrics(
    model: Optional[str] = typer.Argument(None, help="Model name (default model when omitted)"),
    config: Optional[str] = CONFIG_OPTION,
    days: int = typer.Option(7, "--days", "-d", help="Days to look back")
):
    """Show aggregated daily performance metrics of a model."""
    try:
        service_config = _load_config(config)
        model_name = (model or service_config.default_model).upper()
        rows = get_repository(service_config.db_path).get_performance_metrics(
            model_name, days_back=days
        )
        if not rows:
            console.print(f"\n[bold yellow]No aggregated metrics for {model_name}[/]")
            console.print("Run `ai-vector-util aggregate` to build daily metrics.\n")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title=f"Performance of {model_name}")
        for column in ("Date", "Calls", "OK", "Failed", "Avg ms", "P95 ms", "P99 ms", "Tokens"):
            table.add_column(column)
        for m in rows:
            table.add_row(
                m.metric_date.isoformat(),
                str(m.total_calls),
                str(m.successful_calls),
                str(m.failed_calls),
                _format_ms(m.avg_latency_ms),
                _format_ms(m.p95_latency_ms),
                _format_ms(m.p99_latency_ms),
                f"{m.total_tokens:,}",
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def errors(
    config: Optional[str] = CONFIG_OPTION,
    days: int = typer.Option(7, "--days", "-d", help="Days to look back")
):
    """Summarize failed operations."""
    try:
        service_config = _load_config(config)
        rows = get_repository(service_config.db_path).get_error_summary(days_back=days)
        if not rows:
            console.print("[green]✓[/] No errors recorded")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title=f"Errors (last {days} days)")
        for column in ("Schema", "Model", "Operation", "Count", "Last seen", "Message"):
            table.add_column(column)
        for row in rows:
            table.add_row(
                row["calling_schema"],
                row["model_name"],
                row["operation_type"],
                str(row["error_count"]),
                row["last_occurrence"].isoformat(timespec="seconds"),
                row["error_message"] or "",
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def aggregate(
    config: Optional[str] = CONFIG_OPTION,
    day: Optional[str] = typer.Option(
        None, "--date", help="Day to aggregate as YYYY-MM-DD (default: yesterday)"
    )
):
    """Rebuild the daily performance metrics of one day."""
    try:
        service_config = _load_config(config)
        target = date.fromisoformat(day) if day else None
        rows = MetricsAggregator(service_config.db_path).aggregate_day(target)
        console.print(f"[green]✓[/] Aggregated {rows} model(s)")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def cleanup(
    config: Optional[str] = CONFIG_OPTION,
    retention_days: Optional[int] = typer.Option(
        None, "--retention-days", "-r", help="Keep this many days of usage records"
    )
):
    """Delete usage records older than the retention window."""
    try:
        service_config = _load_config(config)
        retention = service_config.retention_days if retention_days is None else retention_days
        deleted = MetricsAggregator(service_config.db_path).cleanup(retention)
        console.print(f"[green]✓[/] Deleted {deleted} old usage record(s)")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(config: Optional[str] = CONFIG_OPTION):
    """Show the last 24 hours of every registered model. Exits 1 if any is DEGRADED."""
    try:
        service_config = _load_config(config)
        rows = get_repository(service_config.db_path).get_model_health()
        if not rows:
            console.print("[yellow]No models registered.[/] Run `ai-vector-util init` first.")
            sys.exit(EXIT_CODE_PASS)

        colours = {"HEALTHY": "green", "SLOW": "yellow", "DEGRADED": "red", "IDLE": "dim"}
        table = Table(title="Model Status (last 24h)")
        for column in ("Model", "Active", "Calls", "Errors", "Avg ms", "Hist ms", "Status"):
            table.add_column(column)
        for row in rows:
            state = row["health_status"]
            table.add_row(
                row["model_name"],
                "Y" if row["is_active"] else "N",
                str(row["calls_last_24h"]),
                str(row["errors_last_24h"]),
                _format_ms(row["current_avg_latency"]),
                _format_ms(row["historical_avg_latency"]),
                f"[{colours[state]}]{state}[/]",
            )
        console.print(table)

        degraded = any(row["health_status"] == "DEGRADED" for row in rows)
        sys.exit(EXIT_CODE_FAIL if degraded else EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def health(
    model: Optional[str] = typer.Argument(None, help="Model name (default model when omitted)"),
    config: Optional[str] = CONFIG_OPTION
):
    """Probe a model with a test embedding. Exits 1 when the model is DOWN."""
    try:
        facade = build_facade(_load_config(config))
        state = facade.health_check(model)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    colour = {
        HealthStatus.HEALTHY: "green",
        HealthStatus.DEGRADED: "yellow",
        HealthStatus.DOWN: "red",
    }[state]
    console.print(f"[{colour}]{state.value}[/]")
    sys.exit(EXIT_CODE_FAIL if state is HealthStatus.DOWN else EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
