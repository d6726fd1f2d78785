"""Grant, balance, consumption and integrity commands."""

from __future__ import annotations

from datetime import datetime, timedelta, UTC
from typing import Optional

import typer
from rich.table import Table

from . import app, console, grant_app
from ..db import check_db_integrity
from ..errors import LedgerError
from ..ledger import (
    BalanceScope,
    GrantType,
    Owner,
    consume_credits,
    get_balance_and_usage,
    grant_credits,
    select_for_reporting,
)
from ..ledger.service import default_store


def _owner(owner_id: str, org: bool) -> Owner:
    try:
        return Owner.organization(owner_id) if org else Owner.user(owner_id)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))


def _parse_when(value: str | None, default: datetime) -> datetime:
    if not value:
        return default
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"not an ISO-8601 timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# ── Grants ──────────────────────────────────────────────────────────────────

@grant_app.command("add")
def add_grant(
    owner_id: str,
    amount: int,
    grant_type: GrantType = typer.Option(GrantType.ADMIN, "--type", "-t", help="Grant type"),
    org: bool = typer.Option(False, "--org", help="Owner is an organization"),
    expires_in_days: int = typer.Option(0, "--expires-in-days", help="0 = never expires"),
    description: str = typer.Option("", "--description", "-d"),
    operation_id: str = typer.Option("", "--operation-id", help="Idempotency id (defaults to a new UUID)"),
    priority: Optional[int] = typer.Option(None, "--priority", help="Override the configured priority"),
):
    """Issue a grant; outstanding debt is cleared from it first."""
    if amount <= 0:
        raise typer.BadParameter("amount must be positive")
    owner = _owner(owner_id, org)
    expires_at = datetime.now(UTC) + timedelta(days=expires_in_days) if expires_in_days > 0 else None

    try:
        outcome = grant_credits(
            owner,
            amount,
            grant_type,
            description=description or None,
            expires_at=expires_at,
            operation_id=operation_id or None,
            priority=priority,
        )
    except LedgerError as exc:
        console.print(f"[red]Grant failed: {exc}[/red]")
        raise typer.Exit(1)

    if outcome.grant is None:
        console.print(f"[yellow]Cleared {outcome.debt_cleared} credits of debt; nothing left to grant.[/yellow]")
        return
    if not outcome.created:
        console.print(f"[yellow]Grant {outcome.grant.operation_id} already exists; unchanged.[/yellow]")
        return
    console.print(
        f"[green]Granted {amount} {grant_type} credits to {owner.lock_key}[/green] "
        f"(id={outcome.grant.operation_id}, balance={outcome.grant.balance}, debt cleared={outcome.debt_cleared})"
    )


@grant_app.command("list")
def list_grants(
    owner_id: str,
    org: bool = typer.Option(False, "--org", help="Owner is an organization"),
    since: str = typer.Option("", "--since", help="Also show grants that expired after this ISO timestamp"),
):
    """List active grants in consumption order."""
    owner = _owner(owner_id, org)
    now = datetime.now(UTC)
    with default_store().read_session() as session:
        grants = select_for_reporting(session, owner, now, include_expired_since=_parse_when(since, now))

    table = Table(title=f"Grants for {owner.lock_key}")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Priority", justify="right")
    table.add_column("Principal", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Expires")
    table.add_column("Created")
    for g in grants:
        balance = f"[red]{g.balance}[/red]" if g.balance < 0 else str(g.balance)
        table.add_row(
            g.operation_id,
            str(g.type),
            str(g.priority),
            str(g.principal),
            balance,
            g.expires_at.isoformat() if g.expires_at else "never",
            g.created_at.isoformat(),
        )
    console.print(table)


# ── Balance / consumption ───────────────────────────────────────────────────

@app.command("balance")
def show_balance(
    owner_id: str,
    cycle_start: str = typer.Option("", "--cycle-start", help="ISO timestamp (default: 30 days ago)"),
    org: bool = typer.Option(False, "--org", help="Owner is an organization"),
    personal: bool = typer.Option(False, "--personal", help="Exclude organization grants"),
):
    """Show usage this cycle and the settled balance."""
    owner = _owner(owner_id, org)
    start = _parse_when(cycle_start, datetime.now(UTC) - timedelta(days=30))
    scope = BalanceScope.PERSONAL if personal else BalanceScope.FULL

    report = get_balance_and_usage(owner, start, scope=scope)
    balance = report.balance

    table = Table(title=f"Balance for {owner.lock_key}")
    table.add_column("Grant type")
    table.add_column("Remaining", justify="right")
    table.add_column("Principal", justify="right")
    for grant_type in GrantType:
        table.add_row(str(grant_type), str(balance.breakdown[grant_type]), str(balance.principals[grant_type]))
    console.print(table)

    console.print(f"Usage this cycle: {report.usage_this_cycle}")
    console.print(f"Remaining: {balance.total_remaining}  Debt: {balance.total_debt}  Net: {balance.net_balance}")
    if report.settlement:
        console.print(f"[dim]Settled {report.settlement.settlement_amount} credits of debt in memory[/dim]")


@app.command("consume")
def consume(
    owner_id: str,
    credits: int,
    org: bool = typer.Option(False, "--org", help="Owner is an organization"),
):
    """Consume credits (debt is created if balances run out)."""
    if credits <= 0:
        raise typer.BadParameter("credits must be positive")
    owner = _owner(owner_id, org)
    try:
        result = consume_credits(owner, credits)
    except LedgerError as exc:
        console.print(f"[red]Consumption failed: {exc}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Consumed {result.consumed} credits[/green] (from purchased: {result.from_purchased})")


@app.command("check")
def check():
    """Run read-only ledger invariant checks."""
    results = check_db_integrity()
    table = Table(title="Ledger invariants")
    table.add_column("Check")
    table.add_column("Result")
    table.add_column("Detail")
    for result in results:
        status = "[green]PASS[/green]" if result.passed else "[red]FAIL[/red]"
        table.add_row(result.name, status, result.detail or "")
    console.print(table)
    if not all(r.passed for r in results):
        raise typer.Exit(1)
