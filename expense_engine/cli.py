"""
Command line for scheduled jobs.

    expense-engine generate --months-back 6 --months-forward 2
    expense-engine --today 2024-03-15 bills --period 2024-03 --status OVERDUE
    expense-engine consolidate --scope all

Every command prints JSON on stdout; logs go to stderr. A run that had
per-item failures exits with code 1 so cron can alert on it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
from uuid import UUID

import typer

from expense_engine.config import get_settings
from expense_engine.models.bill import BillStatus
from expense_engine.models.reports import ConsolidationScope
from expense_engine.orchestrator import ExpenseEngine, create_engine_components
from expense_engine.queries import QueryExecutionError
from expense_engine.services.clock import FixedClock
from expense_engine.services.roster import FounderRegistry, RosterError
from expense_engine.services.storage import NotFoundError, StorageError


app = typer.Typer(help="Recurring expense engine: generation, consolidation, reports.")


def _configure_logging() -> None:
    level = get_settings().app.log_level
    logging.basicConfig(level=level, stream=sys.stderr, format="%(message)s")
    logging.getLogger().setLevel(level)


def _echo(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _engine(ctx: typer.Context) -> ExpenseEngine:
    opts = ctx.obj or {}
    roster = None
    if opts.get("roster"):
        try:
            roster = FounderRegistry.from_json_file(str(opts["roster"]))
        except RosterError as e:
            typer.echo(f"Roster error: {e}", err=True)
            raise typer.Exit(code=2)

    clock = FixedClock(opts["today"]) if opts.get("today") else None
    try:
        return create_engine_components(
            roster=roster,
            clock=clock,
            database_url=opts.get("database_url"),
        )
    except (RosterError, StorageError) as e:
        typer.echo(f"Startup error: {e}", err=True)
        raise typer.Exit(code=2)


def _run(coro):
    try:
        return asyncio.run(coro)
    except (NotFoundError, QueryExecutionError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=2)


@app.callback()
def main(
    ctx: typer.Context,
    database_url: Optional[str] = typer.Option(
        None, "--database-url", help="SQLAlchemy URL (default: EXPENSE_DB_URL)"
    ),
    roster: Optional[Path] = typer.Option(
        None, exists=True, dir_okay=False, help="Founder roster JSON (default: EXPENSE_ENGINE_ROSTER_PATH)"
    ),
    today: Optional[datetime] = typer.Option(
        None, formats=["%Y-%m-%d"], help="Pretend today is this date"
    ),
):
    _configure_logging()
    ctx.obj = {
        "database_url": database_url,
        "roster": roster,
        "today": today.date() if today else None,
    }


@app.command("generate")
def generate_cmd(
    ctx: typer.Context,
    months_back: Optional[int] = typer.Option(None, min=0, help="Months before the current one"),
    months_forward: Optional[int] = typer.Option(None, min=0, help="Months after the current one"),
    template_id: Optional[str] = typer.Option(None, help="Only this template"),
):
    """Create missing bill instances for active templates."""
    engine = _engine(ctx)
    result = _run(engine.generate(
        months_back=months_back,
        months_forward=months_forward,
        template_id=UUID(template_id) if template_id else None,
    ))
    _echo(result)
    if result["errors"]:
        raise typer.Exit(code=1)


@app.command("fix-orphans")
def fix_orphans_cmd(ctx: typer.Context):
    """Link one-off bills to the recurring template they belong to."""
    result = _run(_engine(ctx).fix_orphans())
    _echo(result)
    if result["failures"]:
        raise typer.Exit(code=1)


@app.command("consolidate")
def consolidate_cmd(
    ctx: typer.Context,
    scope: ConsolidationScope = typer.Option(ConsolidationScope.ALL, help="What to consolidate"),
):
    """Merge duplicate rules and templates, link orphans, re-run skip rules."""
    result = _run(_engine(ctx).consolidate(scope))
    _echo(result)
    if result["failures"]:
        raise typer.Exit(code=1)


@app.command("preview")
def preview_cmd(
    ctx: typer.Context,
    scope: ConsolidationScope = typer.Option(ConsolidationScope.ALL, help="What to consolidate"),
):
    """Show what consolidate would do, without changing anything."""
    plan = _run(_engine(ctx).preview_consolidation(scope))
    _echo(plan.model_dump(mode="json"))


@app.command("balances")
def balances_cmd(ctx: typer.Context):
    """What each founder owes and has paid."""
    balances = _run(_engine(ctx).founder_balances())
    _echo([b.model_dump(mode="json") for b in balances])


@app.command("bills")
def bills_cmd(
    ctx: typer.Context,
    period: Optional[str] = typer.Option(None, help="YYYY-MM"),
    status: Optional[BillStatus] = typer.Option(None, help="PENDING, PAID or OVERDUE"),
    upcoming: bool = typer.Option(False, help="Only unpaid bills due soon"),
):
    """List bills with their founder shares."""
    engine = _engine(ctx)
    if upcoming:
        bills = _run(engine.upcoming_bills())
    else:
        bills = _run(engine.list_bills(period=period, status=status))
    _echo([b.model_dump(mode="json") for b in bills])


@app.command("check")
def check_cmd(ctx: typer.Context):
    """Scan stored bills and founder shares for broken invariants."""
    report = _run(_engine(ctx).check_integrity())
    _echo(report.model_dump(mode="json"))
    if not report.is_healthy:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
