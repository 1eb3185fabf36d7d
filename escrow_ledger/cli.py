"""CLI for the escrow ledger.

Operational commands: reconciliation, the auto-confirm sweep, the legacy status
backfill, schema creation and the API server.
"""

import asyncio
import json
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from escrow_ledger import __version__
from escrow_ledger.config import get_settings
from escrow_ledger.core.auto_confirm import AutoConfirmSweep, SweepReport
from escrow_ledger.core.backfill import BackfillReport, normalize_payment_statuses
from escrow_ledger.core.reconciliation import ConsistencyChecker, ReconciliationReport
from escrow_ledger.database.connection import (
    close_db,
    get_session_factory,
    init_db,
    session_scope,
)
from escrow_ledger.domain.states import PaymentStatus
from escrow_ledger.monitoring.logging import setup_logging

T = TypeVar("T")

app = typer.Typer(
    name="escrow-ledger",
    help="Escrow ledger - bookings, escrow, payouts and reconciliation",
    add_completion=False,
)

console = Console()


def _run(job: Callable[[], Awaitable[T]]) -> T:
    """Run an async job and dispose of the engine afterwards."""

    async def runner() -> T:
        try:
            return await job()
        finally:
            await close_db()

    return asyncio.run(runner())


async def _reconcile() -> ReconciliationReport:
    async with session_scope(get_session_factory()) as db:
        return await ConsistencyChecker().run(db)


@app.command()
def reconcile(
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Check every invariant; exits 1 when violations are found."""
    setup_logging()
    report = _run(_reconcile)

    if as_json:
        console.print_json(json.dumps(report.to_dict()))
    else:
        console.print(
            f"[bold]Checked[/bold] {report.bookings} bookings, {report.payments} payments, "
            f"{report.payouts} payouts in {report.duration_seconds:.2f}s"
        )
        if report.ok:
            console.print("[green]No violations found.[/green]")
        else:
            table = Table(title=f"{len(report.violations)} violation(s)")
            table.add_column("Code", style="red")
            table.add_column("Booking", style="cyan")
            table.add_column("Payment", style="cyan")
            table.add_column("Payout", style="cyan")
            table.add_column("Message")
            for v in report.violations:
                table.add_row(
                    v.code, v.booking_id or "-", v.payment_id or "-", v.payout_id or "-", v.message
                )
            console.print(table)

    if not report.ok:
        raise typer.Exit(1)


@app.command()
def sweep() -> None:
    """Run the auto-confirm sweep once."""
    setup_logging()

    async def job() -> SweepReport:
        return await AutoConfirmSweep(get_session_factory()).run_once()

    report = _run(job)
    console.print(
        f"Scanned {report.scanned}, completed [green]{report.completed}[/green], "
        f"skipped {report.skipped}, failed [red]{report.failed}[/red]"
    )
    if report.failed:
        raise typer.Exit(1)


@app.command("backfill-statuses")
def backfill_statuses(
    completed_as: Optional[str] = typer.Option(
        None,
        "--completed-as",
        help="Map legacy COMPLETED payments to RELEASED or ESCROW",
    ),
    apply: bool = typer.Option(
        False,
        "--apply",
        help="Write the changes (default is a dry run)",
    ),
) -> None:
    """Normalize legacy payment statuses onto the canonical set."""
    setup_logging()

    target: Optional[PaymentStatus] = None
    if completed_as:
        try:
            target = PaymentStatus(completed_as.strip().upper())
        except ValueError:
            console.print(f"[red]Error:[/red] Unknown payment status: {completed_as}")
            raise typer.Exit(2)

    async def job() -> BackfillReport:
        async with session_scope(get_session_factory()) as db:
            return await normalize_payment_statuses(db, completed_as=target, dry_run=not apply)

    try:
        report = _run(job)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(2)

    table = Table(title="Payment status backfill" + (" (dry run)" if report.dry_run else ""))
    table.add_column("Mapping", style="cyan")
    table.add_column("Rows", style="green", justify="right")
    for mapping, rows in sorted(report.mapped.items()):
        table.add_row(mapping, str(rows))
    for status, rows in sorted(report.unresolved.items()):
        table.add_row(f"{status} -> [yellow]unresolved[/yellow]", str(rows))
    console.print(table)

    if report.unresolved:
        console.print(
            "[yellow]Warning:[/yellow] some statuses were left unresolved; "
            "pass --completed-as to map legacy COMPLETED rows."
        )


@app.command("init-db")
def init_database() -> None:
    """Create all tables (development only; use Alembic in production)."""
    setup_logging()
    _run(init_db)
    console.print("[green]Database schema created.[/green]")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "escrow_ledger.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


def _show_version(value: bool) -> None:
    if value:
        console.print(f"escrow-ledger v{__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_show_version,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Escrow ledger - bookings, escrow, payouts and reconciliation."""


def main() -> None:
    app()


if __name__ == "__main__":
    main()
