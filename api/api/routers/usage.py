"""Usage ingestion, ledger queries, summaries, storage snapshots and aggregations."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Query, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from metering_core.metering.export import ExportFormat
from metering_core.metering.periods import period_of
from metering_core.models import (
    ResourceType,
    StorageDailySnapshot,
    UsageAggregation,
    UsageEventInput,
    UsageSource,
    UsageSummary,
)

from api.dependencies import (
    AggregatorDep,
    ContextDep,
    ExporterDep,
    IngestionDep,
    StorageRecorderDep,
)
from api.schemas import (
    AggregationListResponse,
    IngestResponse,
    PeriodRequest,
    StorageSnapshotRequest,
    UsageEventPage,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


def _current_period() -> str:
    return period_of(datetime.now(UTC))


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.post("/events", response_model=IngestResponse, status_code=201)
async def record_usage_event(
    body: UsageEventInput,
    ctx: ContextDep,
    gate: IngestionDep,
    response: Response,
) -> IngestResponse:
    """Record one usage event.

    Returns 201 for a new event and 200 with the stored event when the
    idempotency key has been seen before.
    """
    result = await gate.record_usage_event(ctx, body)
    if not result.created:
        response.status_code = 200
    return IngestResponse(event=result.event, created=result.created)


@router.get("/events", response_model=UsageEventPage)
async def list_usage_events(
    ctx: ContextDep,
    exporter: ExporterDep,
    workspace_id: str = Query(min_length=1),
    project_id: str | None = Query(default=None),
    resource_type: ResourceType | None = Query(default=None),
    source: UsageSource | None = Query(default=None),
    start: datetime | None = Query(default=None, description="Inclusive lower bound on event time"),
    end: datetime | None = Query(default=None, description="Exclusive upper bound on event time"),
    billing_entity_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> UsageEventPage:
    """Return one page of usage events, newest first."""
    events, total = await exporter.list_events(
        ctx,
        workspace_id,
        project_id=project_id,
        resource_type=resource_type,
        source=source,
        start=start,
        end=end,
        billing_entity_id=billing_entity_id,
        limit=limit,
        offset=offset,
    )
    return UsageEventPage(items=events, total=total, limit=limit, offset=offset)


@router.get("/events/export")
async def export_usage_events(
    ctx: ContextDep,
    exporter: ExporterDep,
    workspace_id: str = Query(min_length=1),
    format: ExportFormat = Query(default=ExportFormat.JSON),  # noqa: A002
    project_id: str | None = Query(default=None),
    resource_type: ResourceType | None = Query(default=None),
    source: UsageSource | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> Response:
    """Export matching events as CSV text or a JSON array."""
    exported = await exporter.export(
        ctx,
        workspace_id,
        format,
        project_id=project_id,
        resource_type=resource_type,
        source=source,
        start=start,
        end=end,
    )
    if format == ExportFormat.CSV:
        return Response(
            content=exported,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="usage-{workspace_id}.csv"'},
        )
    return JSONResponse(content=jsonable_encoder(exported))


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


@router.get("/summary", response_model=UsageSummary)
async def get_usage_summary(
    ctx: ContextDep,
    aggregator: AggregatorDep,
    workspace_id: str = Query(min_length=1),
    period: str | None = Query(default=None, description="YYYY-MM; defaults to the current month"),
    billing_entity_id: str | None = Query(default=None),
) -> UsageSummary:
    """Current totals and estimated cost for a period, computed on demand."""
    return await aggregator.summarize(ctx, workspace_id, period or _current_period(), billing_entity_id)


# ---------------------------------------------------------------------------
# Storage snapshots
# ---------------------------------------------------------------------------


@router.post("/storage-snapshots", response_model=StorageDailySnapshot, status_code=201)
async def record_storage_snapshot(
    body: StorageSnapshotRequest,
    ctx: ContextDep,
    recorder: StorageRecorderDep,
) -> StorageDailySnapshot:
    return await recorder.record_storage_snapshot(
        ctx,
        body.workspace_id,
        body.storage_gb,
        snapshot_date=body.snapshot_date,
        project_id=body.project_id,
    )


# ---------------------------------------------------------------------------
# Aggregations
# ---------------------------------------------------------------------------


@router.get("/aggregations", response_model=AggregationListResponse)
async def list_aggregations(
    ctx: ContextDep,
    aggregator: AggregatorDep,
    workspace_id: str = Query(min_length=1),
    start_period: str | None = Query(default=None),
    end_period: str | None = Query(default=None),
) -> AggregationListResponse:
    items = await aggregator.list_aggregations(ctx, workspace_id, start_period, end_period)
    return AggregationListResponse(items=items)


@router.post("/aggregations/calculate", response_model=UsageAggregation)
async def calculate_aggregation(
    body: PeriodRequest,
    ctx: ContextDep,
    aggregator: AggregatorDep,
) -> UsageAggregation:
    """Recompute and persist the aggregation for a period.

    Fails with 409 once the period has been invoiced.
    """
    return await aggregator.calculate_aggregation(ctx, body.workspace_id, body.period, body.billing_entity_id)
