"""
CLI interface for Rental Meter.

Provides command-line access to the ledger and a simulated metered run.
"""

import asyncio
import logging
import sqlite3
import sys
import uuid
from datetime import datetime
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from rental_meter.config.loader import MeterConfig, load_meter_config
from rental_meter.core.charging import ChargeEvent, InMemoryChargingService
from rental_meter.core.period import derive_partition_key, utc_now
from rental_meter.core.quota import sum_free_units
from rental_meter.core.rental import RentalState, select_authoritative_marker
from rental_meter.core.session import MeteringSession
from rental_meter.demo.simulated_crawl import make_fetcher, start_requests
from rental_meter.sdk.work_unit import MeteredWorkUnit, WorkUnitReport
from rental_meter.storage.ledger import SqliteLedgerStore
from rental_meter.storage.models import PERIOD_MARKER_TYPE
from rental_meter.storage.repository import LedgerRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Rental Meter CLI."""
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("Rental Meter - Use --help to see available commands")


@app.command()
def init(
    db: Optional[str] = typer.Option(
        None, "--db", envvar="RENTAL_METER_LEDGER", help="Path to the ledger database"
    ),
):
    """Initialize the ledger database."""
    try:
        LedgerRepository(db or MeterConfig().ledger.path).initialize_schema()
        console.print("[green]✓[/] Ledger initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


async def _run_worker(
    config: MeterConfig,
    repository: LedgerRepository,
    charging: InMemoryChargingService,
    account: str,
    worker_id: str,
    request_count: int,
    latency: float,
    concurrency: int,
):
    session = MeteringSession(
        config.metering,
        SqliteLedgerStore(repository),
        charging,
        account_id=account,
        worker_id=worker_id,
    )
    async with session:
        report = await MeteredWorkUnit(session, max_concurrency=concurrency).run(
            start_requests(request_count), make_fetcher(latency)
        )
    return session, report


@app.command()
def run(
    account: str = typer.Option(
        ..., "--account", "-a", envvar="RENTAL_METER_ACCOUNT", help="Account being billed"
    ),
    worker_id: Optional[str] = typer.Option(
        None, "--worker-id", "-w", help="Identity of this worker (random if omitted)"
    ),
    requests: int = typer.Option(50, "--requests", "-n", min=0, help="Number of pages to crawl"),
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML meter configuration"
    ),
    db: Optional[str] = typer.Option(
        None, "--db", envvar="RENTAL_METER_LEDGER", help="Path to the ledger database"
    ),
    latency: float = typer.Option(1.0, "--latency", min=0.0, help="Simulated seconds per page"),
    concurrency: int = typer.Option(3, "--concurrency", min=1, help="Maximum pages in flight"),
    charge_limit: Optional[int] = typer.Option(
        None, "--charge-limit", min=1, help="Simulated per-run charge limit"
    ),
):
    """
    Run one metered worker over a simulated crawl.

    Charges are simulated; the ledger is real, so several workers started
    against the same --db and --account share rental and free quota.
    """
    try:
        config = load_meter_config(config_path) if config_path else MeterConfig()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        repository = LedgerRepository(db or config.ledger.path)
        repository.initialize_schema()
        charging = InMemoryChargingService(max_total_charges=charge_limit)
        session, report = asyncio.run(_run_worker(
            config,
            repository,
            charging,
            account,
            worker_id or uuid.uuid4().hex[:12],
            requests,
            latency,
            concurrency,
        ))
        _display_run_report(session, report, charging)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(
    account: str = typer.Option(
        ..., "--account", "-a", envvar="RENTAL_METER_ACCOUNT", help="Account to report on"
    ),
    period: Optional[str] = typer.Option(
        None, "--period", "-p", help="Billing period as YYYY-MM (defaults to current)"
    ),
    db: Optional[str] = typer.Option(
        None, "--db", envvar="RENTAL_METER_LEDGER", help="Path to the ledger database"
    ),
):
    """Show rental and free quota usage for one period. Read-only."""
    if period:
        try:
            when = datetime.strptime(period, "%Y-%m")
        except ValueError:
            console.print(f"[red]Error:[/] period must be YYYY-MM, got {period!r}")
            sys.exit(EXIT_CODE_FAIL)
    else:
        when = utc_now()
    partition_key = derive_partition_key(when, account)

    try:
        records = LedgerRepository(db or MeterConfig().ledger.path).list_all(partition_key)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No ledger data found[/]")
            console.print("\nRun `rental-meter init` to initialize the ledger\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    marker = select_authoritative_marker(records)
    table = Table(title=f"Usage for {partition_key}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Period markers", str(sum(1 for r in records if r.type == PERIOD_MARKER_TYPE)))
    table.add_row("Rental owner", marker.worker_id if marker else "-")
    table.add_row("Free units used", f"{sum_free_units(records):,}")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def periods(
    account: str = typer.Option(
        ..., "--account", "-a", envvar="RENTAL_METER_ACCOUNT", help="Account to report on"
    ),
    db: Optional[str] = typer.Option(
        None, "--db", envvar="RENTAL_METER_LEDGER", help="Path to the ledger database"
    ),
):
    """List the billing periods with ledger records for an account."""
    try:
        partition_keys = LedgerRepository(db or MeterConfig().ledger.path).list_partitions()
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No ledger data found[/]")
            console.print("\nRun `rental-meter init` to initialize the ledger\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    # Keys are "YYYY-MM-<account>"; accounts may themselves contain dashes.
    known = sorted(key[:7] for key in partition_keys if key[8:] == account)
    if not known:
        console.print(f"No billing periods recorded for {account}")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Billing periods for {account}")
    table.add_column("Period")
    for period in known:
        table.add_row(period)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _display_run_report(
    session: MeteringSession,
    report: WorkUnitReport,
    charging: InMemoryChargingService,
) -> None:
    """Display the outcome of a metered run."""
    console.print(f"\n[bold]Metered run {session.worker_id}[/bold] ({session.partition_key})")
    console.print("-" * 40)

    table = Table()
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    rental_style = "green" if session.rental.state is RentalState.CHARGED else "dim"
    table.add_row("Rental", f"[{rental_style}]{session.rental.state.value}[/]")
    table.add_row("Items produced", f"{len(report.items):,}")
    table.add_row("Free results", f"{report.free:,}")
    table.add_row("Paid results", f"{report.paid:,}")
    table.add_row("Result charges", f"{charging.count_for(ChargeEvent.RESULT):,}")
    table.add_row("Free units used (cached)", f"{session.quota.free_units_used:,}")
    console.print(table)

    if report.stopped_by_limit:
        console.print(
            f"\n[bold yellow]Stopped by charge limit[/] - "
            f"{report.skipped_requests} requests not processed"
        )


if __name__ == "__main__":
    app()
