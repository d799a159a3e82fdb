"""
CLI interface for AI Cost Router.

Operational commands over the billing ledger and router configuration.
"""

import sys
import sqlite3
from decimal import Decimal
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_cost_router.config.loader import RouterConfig, load_router_config
from ai_cost_router.core.errors import ConfigError
from ai_cost_router.storage.repository import (
    DEFAULT_DB_PATH,
    BillingRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Cost Router CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Cost Router - Use --help to see available commands")


@app.command()
def init(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Billing ledger database path")
):
    """Initialize the billing ledger database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Billing ledger initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("check-config")
def check_config(
    path: str = typer.Argument(..., help="Router YAML configuration file")
):
    """Validate a router configuration file and show its candidates."""
    try:
        config = load_router_config(path)
    except (FileNotFoundError, yaml.YAMLError, ConfigError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] {path} is valid")
    _display_providers(config)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def pricing(
    path: str = typer.Argument(..., help="Router YAML configuration file")
):
    """Show the price table from a configuration file."""
    try:
        config = load_router_config(path)
    except (FileNotFoundError, yaml.YAMLError, ConfigError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Pricing (USD per unit)")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Prompt token", justify="right")
    table.add_column("Completion token", justify="right")
    table.add_column("Byte", justify="right")
    for (provider_id, model_id), price in sorted(config.pricing_table().prices.items()):
        table.add_row(
            provider_id,
            model_id,
            str(price.prompt_cost_per_token),
            str(price.completion_cost_per_token),
            str(price.cost_per_byte),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter to a single tenant"),
    days: int = typer.Option(30, "--days", "-d", help="Days of history to include"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Billing ledger database path"),
):
    """Summarize billed usage per tenant."""
    try:
        summary = BillingRepository(db).usage_summary(days=days, tenant_id=tenant)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_no_data()
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not summary:
        _print_no_data()
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Tenant usage (last {days} days)")
    table.add_column("Tenant")
    table.add_column("Requests", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Cache hits", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for row in summary:
        table.add_row(
            row["tenant_id"],
            str(row["total_requests"]),
            str(row["failed_requests"]),
            str(row["cache_hits"]),
            f"{row['total_tokens']:,}",
            _format_currency(row["total_cost"]),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def records(
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter to a single tenant"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum records to show"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Billing ledger database path"),
):
    """Show the most recent billing records."""
    try:
        rows = BillingRepository(db).fetch_recent(tenant_id=tenant, limit=limit)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_no_data()
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        _print_no_data()
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent billing records")
    table.add_column("Time")
    table.add_column("Tenant")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Provider")
    table.add_column("Attempts", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for record in rows:
        status = record.status if not record.failure_kind else f"{record.status} ({record.failure_kind})"
        if record.cache_hit:
            status += " [cache]"
        provider = f"{record.provider_id}/{record.model_id}" if record.provider_id else "-"
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.tenant_id,
            record.task_kind,
            status,
            provider,
            str(record.attempts),
            str(record.total_tokens),
            _format_currency(record.estimated_cost),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _print_no_data() -> None:
    console.print("\n[bold yellow]No billing records found[/]")
    console.print("\nTo get started with AI Cost Router:")
    console.print("1. Run `ai-cost-router init` to initialize the billing ledger")
    console.print("2. Route calls through the Gateway with a SQLiteBillingSink")
    console.print("3. Run this command again to see usage\n")


def _format_currency(amount: Decimal) -> str:
    """Format currency; sub-cent amounts keep micro-dollar precision."""
    if amount and abs(amount) < Decimal("0.01"):
        return f"${amount:.6f}"
    return f"${amount:,.2f}"


def _display_providers(config: RouterConfig) -> None:
    order = config.routing.effective_order
    if order:
        console.print(f"Failover order: {' -> '.join(order)}")
    console.print(f"Call deadline: {config.routing.call_deadline:g}s")

    table = Table(title="Provider models")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Task kinds (rank)")
    table.add_column("Capabilities")
    for provider in config.providers:
        kinds = ", ".join(f"{k} ({r})" for k, r in sorted(provider.priorities.items(), key=lambda i: i[1]))
        table.add_row(
            provider.provider,
            provider.model,
            kinds,
            ", ".join(sorted(provider.capabilities)) or "-",
        )
    console.print(table)


if __name__ == "__main__":
    app()
