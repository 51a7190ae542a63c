"""
CLI interface for Care Guard.

Operator commands for the audit database, service health and budgets.
"""

import asyncio
import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from care_guard.config.loader import BudgetPolicy, load_budget_policy, load_settings
from care_guard.core.cost_tracker import CostTracker, MonthlyAPIBudget
from care_guard.core.orchestrator import ServiceOrchestrator, build_guard
from care_guard.storage.repository import (
    UsageRepository,
    fetch_audit_entries,
    initialize_schema,
    verify_audit_chain,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

STATUS_STYLES = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """Care Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)]
    )
    if ctx.invoked_subcommand is None:
        console.print("Care Guard - Use --help to see available commands")


@app.command()
def init():
    """Initialize the Care Guard database."""
    try:
        settings = load_settings()
        initialize_schema(settings.audit.db_path)
        console.print(f"[green]✓[/] Database initialized at {settings.audit.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


async def _run_health_check(orchestrator: ServiceOrchestrator) -> dict:
    await orchestrator.initialize()
    try:
        return await orchestrator.perform_health_check()
    finally:
        await orchestrator.shutdown()


@app.command()
def health():
    """Probe every external service and report the aggregate status."""
    try:
        settings = load_settings()
        orchestrator = ServiceOrchestrator(settings, build_guard(settings, persist=False))
        report = asyncio.run(_run_health_check(orchestrator))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Service Health")
    table.add_column("Service")
    table.add_column("Status")
    table.add_column("Configured")
    for name, detail in report["services"].items():
        style = STATUS_STYLES[detail["status"]]
        table.add_row(name, f"[{style}]{detail['status']}[/]", "yes" if detail["configured"] else "no")
    console.print(table)

    style = STATUS_STYLES[report["status"]]
    console.print(f"\n[bold]Overall:[/bold] [{style}]{report['status']}[/]")
    console.print(f"Checked at {report['last_checked']}")
    sys.exit(EXIT_CODE_FAIL if report["status"] == "unhealthy" else EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.4f}"


def _display_budget(status: MonthlyAPIBudget) -> None:
    console.print(f"\n[bold]Monthly API Budget[/bold] for {status.user_id}")
    console.print(f"Period start: {status.period_start:%Y-%m-%d}")
    console.print("-" * 40)

    table = Table()
    table.add_column("Service")
    table.add_column("Budget", justify="right")
    table.add_column("Spent", justify="right")
    table.add_column("Remaining", justify="right")
    for name, service in status.services.items():
        spent = _format_currency(service.spent)
        if service.exceeded:
            spent = f"[red]{spent}[/]"
        table.add_row(
            name,
            _format_currency(service.budget),
            spent,
            _format_currency(service.remaining)
        )
    console.print(table)
    console.print(
        f"Total: {_format_currency(status.spent)} of {_format_currency(status.total_budget)} "
        f"({_format_currency(status.remaining)} remaining)"
    )

    alerts = status.alerts
    if alerts.budget_exceeded:
        console.print("[bold red]Budget exceeded[/]")
    elif alerts.threshold_90:
        console.print("[yellow]Over 90% of the monthly budget used[/]")
    elif alerts.threshold_75:
        console.print("[yellow]Over 75% of the monthly budget used[/]")
    elif alerts.threshold_50:
        console.print("Over 50% of the monthly budget used")


@app.command()
def budget(
    user_id: str = typer.Argument(..., help="User whose budget to show"),
    tenant: str = typer.Option("default", "--tenant", "-t", help="Tenant owning the usage records")
):
    """Show a user's current-month spend from the persisted usage ledger."""
    try:
        settings = load_settings()
        if settings.budget_policy_path:
            policy = load_budget_policy(settings.budget_policy_path)
        else:
            policy = BudgetPolicy.default()
        initialize_schema(settings.audit.db_path)
        tracker = CostTracker(policy, repository=UsageRepository(settings.audit.db_path))
        status = tracker.load_from_ledger(tenant, user_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_budget(status)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def audit(
    tenant_id: str = typer.Argument(..., help="Tenant whose audit trail to show"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only entries for this user"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries to show"),
    verify: bool = typer.Option(False, "--verify", help="Verify the audit log hash chain")
):
    """Show recent audit entries for a tenant."""
    try:
        settings = load_settings()
        initialize_schema(settings.audit.db_path)
        entries = fetch_audit_entries(tenant_id, user_id=user, limit=limit, db_path=settings.audit.db_path)
        chain_ok = verify_audit_chain(settings.audit.db_path) if verify else None
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print(f"\n[dim]No audit entries found for tenant {tenant_id}.[/]")
    else:
        table = Table(title=f"Audit log: {tenant_id}")
        table.add_column("Timestamp")
        table.add_column("User")
        table.add_column("Action")
        table.add_column("Resource")
        table.add_column("PHI")
        table.add_column("Status")
        table.add_column("ms", justify="right")
        for entry in entries:
            status = entry.status.value
            table.add_row(
                entry.timestamp.isoformat(timespec="seconds"),
                entry.user_id or "-",
                entry.action,
                entry.resource_type,
                "yes" if entry.phi_accessed else "no",
                f"[red]{status}[/]" if status == "error" else status,
                f"{entry.execution_time_ms:.1f}"
            )
        console.print(table)

    if chain_ok is False:
        console.print("[bold red]✗ Audit log hash chain is broken[/]")
        sys.exit(EXIT_CODE_FAIL)
    if chain_ok:
        console.print("[green]✓[/] Audit log hash chain verified")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
