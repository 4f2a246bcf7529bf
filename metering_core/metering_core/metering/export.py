"""Usage event export as JSON records or CSV text."""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from metering_core.context import Action, RequestContext
from metering_core.errors import ValidationError
from metering_core.models.usage import ResourceType, UsageEvent, UsageSource
from metering_core.state.repository import UsageEventRepository

CSV_COLUMNS: tuple[str, ...] = (
    "id",
    "workspaceId",
    "projectId",
    "resourceType",
    "units",
    "source",
    "timestamp",
    "metadata",
)


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"


def event_to_record(event: UsageEvent) -> dict[str, Any]:
    """One export record, keyed by the CSV column names."""
    return {
        "id": event.event_id,
        "workspaceId": event.workspace_id,
        "projectId": event.project_id,
        "resourceType": event.resource_type.value,
        "units": event.units,
        "source": event.source.value,
        "timestamp": event.timestamp.isoformat(),
        "metadata": event.metadata,
    }


def render_csv(events: Iterable[UsageEvent]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for event in events:
        record = event_to_record(event)
        record["projectId"] = record["projectId"] or ""
        record["metadata"] = json.dumps(record["metadata"], sort_keys=True, separators=(",", ":"))
        writer.writerow([record[col] for col in CSV_COLUMNS])
    return buf.getvalue()


def export_events(events: Iterable[UsageEvent], fmt: ExportFormat | str) -> list[dict[str, Any]] | str:
    """Render *events* as a list of records (``json``) or CSV text (``csv``)."""
    try:
        fmt = ExportFormat(fmt)
    except ValueError as exc:
        raise ValidationError(f"Unsupported export format {fmt!r}; use csv or json") from exc
    if fmt == ExportFormat.CSV:
        return render_csv(events)
    return [event_to_record(e) for e in events]


class UsageExporter:
    """Read-side queries over the usage ledger: paging and export."""

    def __init__(self, session: AsyncSession) -> None:
        self._events = UsageEventRepository(session)

    async def export(
        self,
        ctx: RequestContext,
        workspace_id: str,
        fmt: ExportFormat | str = ExportFormat.JSON,
        *,
        project_id: str | None = None,
        resource_type: ResourceType | None = None,
        source: UsageSource | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]] | str:
        await ctx.authorize(workspace_id, Action.EXPORT_USAGE)
        rows = await self._events.iter_all(
            workspace_id,
            project_id=project_id,
            resource_type=resource_type.value if resource_type else None,
            source=source.value if source else None,
            start=start,
            end=end,
        )
        return export_events((UsageEvent.from_row(r) for r in rows), fmt)

    async def list_events(
        self,
        ctx: RequestContext,
        workspace_id: str,
        *,
        project_id: str | None = None,
        resource_type: ResourceType | None = None,
        source: UsageSource | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        billing_entity_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[UsageEvent], int]:
        """One page of matching events, newest first, and the total match count."""
        await ctx.authorize(workspace_id, Action.VIEW_USAGE)
        rows, total = await self._events.list(
            workspace_id,
            project_id=project_id,
            resource_type=resource_type.value if resource_type else None,
            source=source.value if source else None,
            start=start,
            end=end,
            billing_entity_id=billing_entity_id,
            limit=limit,
            offset=offset,
        )
        return [UsageEvent.from_row(r) for r in rows], total
