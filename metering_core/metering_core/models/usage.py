"""Usage ledger models: events, storage snapshots, aggregations and summaries."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from metering_core.models.billing import CostBreakdown


class ResourceType(str, Enum):
    """Billable resource dimensions."""

    TRAFFIC = "traffic"
    STORAGE = "storage"
    COMPUTE = "compute"


class UsageSource(str, Enum):
    """Producer category of a usage event."""

    API = "api"
    FILE = "file"
    JOB = "job"
    AI = "ai"


class BillingEntityType(str, Enum):
    USER = "user"
    ORGANIZATION = "organization"


class BillingEntity(BaseModel):
    """The account that pays for a usage event."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    entity_type: BillingEntityType


class UsageEventInput(BaseModel):
    """A usage event as submitted by a producer, before ingestion.

    Attributes
    ----------
    workspace_id:
        Workspace that consumed the resource.
    resource_type:
        Which billable dimension the units belong to.
    units:
        Bytes for traffic, GB for storage, base units for compute.
    idempotency_key:
        Producer-supplied dedup key, unique per workspace.  Derived from
        the event's own fields when omitted, in which case *timestamp*
        must be given explicitly.
    timestamp:
        When the usage occurred (UTC).  Defaults to now when an
        *idempotency_key* is supplied.
    job_type:
        Compute job type used to look up the unit weight.  Also read from
        ``metadata["jobType"]`` when not given directly.
    """

    workspace_id: str = Field(min_length=1)
    project_id: str | None = None
    resource_type: ResourceType
    units: float
    source: UsageSource = UsageSource.API
    idempotency_key: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    job_type: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class UsageEvent(BaseModel):
    """An immutable ledger record with its billing entity stamped."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:16]}")
    workspace_id: str
    project_id: str | None = None
    resource_type: ResourceType
    units: float
    base_units: float | None = None
    weighted_units: float | None = None
    job_type: str | None = None
    idempotency_key: str
    timestamp: datetime
    ingested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    source: UsageSource
    billing_entity_id: str
    billing_entity_type: BillingEntityType
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> UsageEvent:
        return cls(
            event_id=row.event_id,
            workspace_id=row.workspace_id,
            project_id=row.project_id,
            resource_type=ResourceType(row.resource_type),
            units=row.units,
            base_units=row.base_units,
            weighted_units=row.weighted_units,
            job_type=row.job_type,
            idempotency_key=row.idempotency_key,
            timestamp=row.timestamp,
            ingested_at=row.ingested_at,
            source=UsageSource(row.source),
            billing_entity_id=row.billing_entity_id,
            billing_entity_type=BillingEntityType(row.billing_entity_type),
            metadata=row.metadata_json or {},
        )


class IngestResult(BaseModel):
    """Outcome of an ingestion call; ``created`` is False for a deduplicated retry."""

    event: UsageEvent
    created: bool


class StorageDailySnapshot(BaseModel):
    """Storage held by a workspace (optionally one project) on a UTC day."""

    workspace_id: str
    project_id: str | None = None
    storage_gb: float = Field(ge=0)
    snapshot_date: date
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_row(cls, row: Any) -> StorageDailySnapshot:
        return cls(
            workspace_id=row.workspace_id,
            project_id=row.project_key or None,
            storage_gb=row.storage_gb,
            snapshot_date=row.snapshot_date,
            recorded_at=row.recorded_at,
        )


class UsageAggregation(BaseModel):
    """Monthly roll-up of a workspace's usage, optionally scoped to one billing entity."""

    aggregation_id: str
    workspace_id: str
    period: str
    billing_entity_id: str | None = None
    traffic_total_gb: float = 0.0
    storage_avg_gb: float = 0.0
    compute_total_units: float = 0.0
    event_count: int = 0
    is_finalized: bool = False
    invoice_id: str | None = None
    finalized_at: datetime | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> UsageAggregation:
        return cls(
            aggregation_id=row.aggregation_id,
            workspace_id=row.workspace_id,
            period=row.period,
            billing_entity_id=row.billing_entity_id,
            traffic_total_gb=row.traffic_total_gb,
            storage_avg_gb=row.storage_avg_gb,
            compute_total_units=row.compute_total_units,
            event_count=row.event_count,
            is_finalized=row.is_finalized,
            invoice_id=row.invoice_id,
            finalized_at=row.finalized_at,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class UsageSummary(BaseModel):
    """Non-persisted view of a period's usage with an estimated cost."""

    workspace_id: str
    period: str
    billing_entity_id: str | None = None
    traffic_gb: float
    storage_avg_gb: float
    compute_units: float
    event_count: int
    estimated_cost: CostBreakdown
    events_by_source: dict[str, int] = Field(default_factory=dict)
    events_by_resource_type: dict[str, int] = Field(default_factory=dict)
