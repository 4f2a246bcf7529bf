"""Rich output formatting for meterctl.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import Any

from metering_core.models import Invoice, StorageDailySnapshot, UsageAggregation
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

_STATUS_COLOURS: dict[str, str] = {
    "ok": "green",
    "paid": "green",
    "finalized": "cyan",
    "draft": "yellow",
    "locked": "dim",
    "failed": "red",
}


def _coloured(status: str) -> str:
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def display_aggregation(console: Console, aggregation: UsageAggregation) -> None:
    """Render one aggregation as a summary panel."""
    scope = aggregation.billing_entity_id or "all entities"
    lines = [
        f"[bold]Workspace:[/bold]  {aggregation.workspace_id}",
        f"[bold]Period:[/bold]     {aggregation.period} ({scope})",
        f"[bold]Traffic:[/bold]    {aggregation.traffic_total_gb:.6f} GB",
        f"[bold]Storage:[/bold]    {aggregation.storage_avg_gb:.6f} GB avg",
        f"[bold]Compute:[/bold]    {aggregation.compute_total_units:.4f} units",
        f"[bold]Events:[/bold]     {aggregation.event_count}",
        f"[bold]Version:[/bold]    {aggregation.version}",
    ]
    if aggregation.is_finalized:
        lines.append(f"[bold]Invoiced:[/bold]   {aggregation.invoice_id}")
    console.print(Panel("\n".join(lines), title=aggregation.aggregation_id, border_style="blue"))


def display_aggregate_all(console: Console, period: str, results: list[dict[str, Any]]) -> None:
    """Render the per-workspace outcome of an ``aggregate-all`` run.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    period:
        The billing period that was aggregated.
    results:
        One dict per workspace with ``workspace_id`` and ``status`` keys.
    """
    if not results:
        console.print(f"[dim]No workspaces to aggregate for {period}.[/dim]")
        return

    table = Table(title=f"Aggregation run {period}")
    table.add_column("Workspace", style="bold")
    table.add_column("Status")
    table.add_column("Events", justify="right")
    table.add_column("Version", justify="right")
    table.add_column("Error", style="dim")
    for row in results:
        table.add_row(
            row["workspace_id"],
            _coloured(row["status"]),
            str(row.get("event_count", "-")),
            str(row.get("version", "-")),
            row.get("detail", ""),
        )
    console.print(table)


def display_invoice(console: Console, invoice: Invoice) -> None:
    """Render an invoice with its cost lines."""
    console.print(
        f"Invoice [bold]{invoice.invoice_id}[/bold]  {invoice.workspace_id}  {invoice.period}  "
        f"{_coloured(invoice.status.value)}"
    )
    table = Table(show_header=True)
    table.add_column("Resource")
    table.add_column("Quantity", justify="right")
    table.add_column("Cost", justify="right")
    table.add_row("Traffic", f"{invoice.traffic_gb:.6f} GB", f"{invoice.traffic_cost}")
    table.add_row("Storage", f"{invoice.storage_avg_gb:.6f} GB-month", f"{invoice.storage_cost}")
    table.add_row("Compute", f"{invoice.compute_units:.4f} units", f"{invoice.compute_cost}")
    table.add_row("[bold]Total[/bold]", "", f"[bold]{invoice.total_cost}[/bold]")
    console.print(table)


def display_snapshot(console: Console, snapshot: StorageDailySnapshot) -> None:
    project = f" project {snapshot.project_id}" if snapshot.project_id else ""
    console.print(
        f"[green]Recorded[/green] {snapshot.storage_gb} GB for {snapshot.workspace_id}{project} "
        f"on {snapshot.snapshot_date.isoformat()}"
    )
