"""Request and response models for the metering endpoints.

Domain models from ``metering_core.models`` are returned directly where
their shape is the response; the classes here cover request bodies and
paging envelopes.
"""

from __future__ import annotations

from datetime import date

from metering_core.models import (
    FiredAlert,
    Invoice,
    ResourceType,
    UsageAggregation,
    UsageEvent,
)
from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class IngestResponse(BaseModel):
    """Outcome of ``POST /usage/events``; ``created`` is false for a replayed key."""

    event: UsageEvent
    created: bool


class UsageEventPage(BaseModel):
    items: list[UsageEvent]
    total: int
    limit: int
    offset: int


class StorageSnapshotRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    storage_gb: float = Field(ge=0)
    snapshot_date: date | None = None
    project_id: str | None = None


# ---------------------------------------------------------------------------
# Aggregations and invoices
# ---------------------------------------------------------------------------


class PeriodRequest(BaseModel):
    """Target of an aggregation or invoice run."""

    workspace_id: str = Field(min_length=1)
    period: str = Field(description="Billing period, YYYY-MM")
    billing_entity_id: str | None = None


class AggregationListResponse(BaseModel):
    items: list[UsageAggregation]


class InvoicePage(BaseModel):
    items: list[Invoice]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertEvaluateRequest(BaseModel):
    """Evaluate a workspace's alerts against a period (default: current)."""

    workspace_id: str = Field(min_length=1)
    period: str | None = None
    # Explicit usage figures skip the summary computation.
    current_usage: dict[ResourceType, float] | None = None


class AlertEvaluateResponse(BaseModel):
    period: str
    fired: list[FiredAlert]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Body of every error response."""

    detail: str
    code: str
