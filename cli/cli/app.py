"""meterctl -- Typer-based operator interface for the metering engine.

Drives the engine directly against the state database: scheduled
aggregation and invoicing runs, invoice status changes, storage snapshots
and ledger export.  Human-readable output goes to *stderr* via Rich;
``--json`` writes machine-readable results to *stdout* so that pipelines
can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, TypeVar

import typer
from metering_core.config import Settings, load_settings
from metering_core.context import RequestContext, system_context
from metering_core.errors import MeteringError, PeriodLockedError
from metering_core.metering import (
    InvoiceGenerator,
    PeriodAggregator,
    StorageSnapshotRecorder,
    UsageExporter,
)
from metering_core.metering.export import ExportFormat
from metering_core.metering.periods import parse_period, period_of
from metering_core.state.database import engine_from_settings, get_session, sqlite_path
from metering_core.state.repository import WorkspaceRepository
from metering_core.state.sqlite_adapter import create_local_tables
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from cli.display import (
    display_aggregate_all,
    display_aggregation,
    display_invoice,
    display_snapshot,
)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="meterctl",
    help="Usage metering and billing aggregation operator CLI.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None
_principal: str = "meterctl"

_PAGE_SIZE = 200


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="State database URL (defaults to METERING_DATABASE_URL).",
        envvar="METERING_DATABASE_URL",
    ),
    principal: str = typer.Option(
        "meterctl",
        "--as",
        help="Principal recorded as the actor of this run.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url, _principal  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    _principal = principal


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> Settings:
    return load_settings(database_url=_database_url) if _database_url else load_settings()


def _context() -> RequestContext:
    return system_context(_principal)


async def _with_session(settings: Settings, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
    engine = engine_from_settings(settings)
    try:
        async with get_session(engine) as session:
            return await work(session)
    finally:
        await engine.dispose()


def _run(work: Callable[[AsyncSession, Settings], Awaitable[T]]) -> T:
    """Run *work* in one transaction, turning engine errors into exit code 3."""
    settings = _settings()
    try:
        return asyncio.run(_with_session(settings, lambda session: work(session, settings)))
    except MeteringError as exc:
        console.print(f"[red]{exc.code}:[/red] {exc.message}")
        if _json_output:
            _write_json({"error": exc.code, "detail": exc.message})
        raise typer.Exit(code=3) from exc


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


def _default_period() -> str:
    return period_of(datetime.now(UTC))


def _check_period(period: str) -> str:
    try:
        parse_period(period)
    except MeteringError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=3) from exc
    return period


def _parse_date(value: str | None, label: str) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid {label} date '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the state tables in a local SQLite database.

    PostgreSQL deployments should run ``alembic upgrade head`` instead.
    """
    settings = _settings()
    if sqlite_path(settings.database_url) is None:
        console.print("[yellow]Not a SQLite URL; run the Alembic migrations instead.[/yellow]")
        raise typer.Exit(code=3)

    async def _create() -> None:
        engine = engine_from_settings(settings)
        try:
            await create_local_tables(engine)
        finally:
            await engine.dispose()

    asyncio.run(_create())
    console.print(f"[green]Tables ready[/green] at {settings.database_url}")


@app.command()
def aggregate(
    workspace: str = typer.Option(..., "--workspace", "-w", help="Workspace id."),
    period: str | None = typer.Option(None, "--period", "-p", help="Billing period YYYY-MM (default: current month)."),
    entity: str | None = typer.Option(None, "--entity", help="Restrict to one billing entity."),
) -> None:
    """Recompute the usage aggregation for one workspace and period."""
    period = _check_period(period or _default_period())

    async def _work(session: AsyncSession, settings: Settings) -> Any:
        return await PeriodAggregator(session, settings).calculate_aggregation(_context(), workspace, period, entity)

    aggregation = _run(_work)
    if _json_output:
        _write_json(aggregation.model_dump(mode="json"))
    else:
        display_aggregation(console, aggregation)


@app.command("aggregate-all")
def aggregate_all(
    period: str | None = typer.Option(
        None, "--period", "-p", help="Billing period YYYY-MM (default: current month)."
    ),
) -> None:
    """Recompute the aggregation for every workspace.

    Each workspace runs in its own transaction; a locked period is reported
    as skipped.  Exits with code 3 if any workspace failed.
    """
    period = _check_period(period or _default_period())
    settings = _settings()

    async def _one(engine: AsyncEngine, workspace_id: str) -> dict[str, Any]:
        try:
            async with get_session(engine) as session:
                aggregation = await PeriodAggregator(session, settings).calculate_aggregation(
                    _context(), workspace_id, period
                )
        except PeriodLockedError:
            return {"workspace_id": workspace_id, "status": "locked"}
        except MeteringError as exc:
            return {"workspace_id": workspace_id, "status": "failed", "error": exc.code, "detail": exc.message}
        return {
            "workspace_id": workspace_id,
            "status": "ok",
            "event_count": aggregation.event_count,
            "version": aggregation.version,
        }

    async def _all() -> list[dict[str, Any]]:
        engine = engine_from_settings(settings)
        try:
            workspace_ids: list[str] = []
            async with get_session(engine) as session:
                repo = WorkspaceRepository(session)
                while True:
                    rows = await repo.list(limit=_PAGE_SIZE, offset=len(workspace_ids))
                    workspace_ids.extend(r.workspace_id for r in rows)
                    if len(rows) < _PAGE_SIZE:
                        break
            return [await _one(engine, ws) for ws in workspace_ids]
        finally:
            await engine.dispose()

    results = asyncio.run(_all())
    if _json_output:
        _write_json({"period": period, "results": results})
    else:
        display_aggregate_all(console, period, results)

    if any(r["status"] == "failed" for r in results):
        raise typer.Exit(code=3)


@app.command()
def invoice(
    workspace: str = typer.Option(..., "--workspace", "-w", help="Workspace id."),
    period: str = typer.Option(..., "--period", "-p", help="Billing period YYYY-MM."),
    entity: str | None = typer.Option(None, "--entity", help="Billing entity of the aggregation."),
) -> None:
    """Generate a draft invoice from an existing aggregation."""
    period = _check_period(period)

    async def _work(session: AsyncSession, settings: Settings) -> Any:
        return await InvoiceGenerator(session, settings).generate_invoice(_context(), workspace, period, entity)

    generated = _run(_work)
    if _json_output:
        _write_json(generated.model_dump(mode="json"))
    else:
        display_invoice(console, generated)


@app.command()
def finalize(invoice_id: str = typer.Argument(..., help="Invoice id.")) -> None:
    """Move a draft invoice to finalized."""

    async def _work(session: AsyncSession, settings: Settings) -> Any:
        return await InvoiceGenerator(session, settings).finalize_invoice(_context(), invoice_id)

    updated = _run(_work)
    if _json_output:
        _write_json(updated.model_dump(mode="json"))
    else:
        display_invoice(console, updated)


@app.command()
def pay(invoice_id: str = typer.Argument(..., help="Invoice id.")) -> None:
    """Mark a finalized invoice as paid."""

    async def _work(session: AsyncSession, settings: Settings) -> Any:
        return await InvoiceGenerator(session, settings).pay_invoice(_context(), invoice_id)

    updated = _run(_work)
    if _json_output:
        _write_json(updated.model_dump(mode="json"))
    else:
        display_invoice(console, updated)


@app.command()
def export(
    workspace: str = typer.Option(..., "--workspace", "-w", help="Workspace id."),
    fmt: ExportFormat = typer.Option(ExportFormat.CSV, "--format", "-f", help="csv or json."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to this file instead of stdout."),
    start: str | None = typer.Option(None, "--start", help="Start date YYYY-MM-DD (inclusive)."),
    end: str | None = typer.Option(None, "--end", help="End date YYYY-MM-DD (exclusive)."),
) -> None:
    """Export the workspace's usage events."""
    start_day = _parse_date(start, "start")
    end_day = _parse_date(end, "end")
    start_ts = datetime(start_day.year, start_day.month, start_day.day, tzinfo=UTC) if start_day else None
    end_ts = datetime(end_day.year, end_day.month, end_day.day, tzinfo=UTC) if end_day else None

    async def _work(session: AsyncSession, settings: Settings) -> Any:
        return await UsageExporter(session).export(_context(), workspace, fmt, start=start_ts, end=end_ts)

    exported = _run(_work)
    text = exported if isinstance(exported, str) else json.dumps(exported, indent=2, default=str) + "\n"
    if output is None:
        sys.stdout.write(text)
        return
    output.write_text(text, encoding="utf-8")
    console.print(f"Exported to [bold]{output}[/bold]")


@app.command()
def snapshot(
    workspace: str = typer.Option(..., "--workspace", "-w", help="Workspace id."),
    gb: float = typer.Option(..., "--gb", help="Storage held, in GB.", min=0),
    day: str | None = typer.Option(None, "--date", help="Snapshot date YYYY-MM-DD (default: today UTC)."),
    project: str | None = typer.Option(None, "--project", help="Project id."),
) -> None:
    """Record the storage a workspace holds on one day."""
    snapshot_date = _parse_date(day, "snapshot")

    async def _work(session: AsyncSession, settings: Settings) -> Any:
        return await StorageSnapshotRecorder(session).record_storage_snapshot(
            _context(), workspace, gb, snapshot_date=snapshot_date, project_id=project
        )

    recorded = _run(_work)
    if _json_output:
        _write_json(recorded.model_dump(mode="json"))
    else:
        display_snapshot(console, recorded)
