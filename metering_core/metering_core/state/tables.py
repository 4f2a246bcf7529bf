"""SQLAlchemy 2.0 ORM table definitions for the metering state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that always round-trips as UTC.

    PostgreSQL stores ``timestamptz`` natively.  SQLite has no timezone
    support, so values are normalised to naive UTC on the way in and
    re-tagged as UTC on the way out; lexical ordering then matches
    chronological ordering.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        value = value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all metering tables."""


# ---------------------------------------------------------------------------
# Directory (read-only collaborator state)
# ---------------------------------------------------------------------------


class OrganizationTable(Base):
    """Organizations that can take over billing for their workspaces."""

    __tablename__ = "organizations"

    organization_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    billing_start_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)


class WorkspaceTable(Base):
    """Workspace ownership: the owner user and optional organization."""

    __tablename__ = "workspaces"

    workspace_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    owner_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_workspaces_organization", "organization_id"),)


class BillingAccountTable(Base):
    """Billing account standing per workspace; ``suspended`` blocks ingestion."""

    __tablename__ = "billing_accounts"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','due','suspended')",
            name="ck_billing_accounts_status",
        ),
    )


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class UsageEventTable(Base):
    """Append-only ledger of metered usage events.

    Each row is written once by the ingestion gate with its billing entity
    already stamped.  ``(workspace_id, idempotency_key)`` is unique so that
    producer retries never double count.
    """

    __tablename__ = "usage_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(128), nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resource_type: Mapped[str] = mapped_column(String(16), nullable=False)
    units: Mapped[float] = mapped_column(Float, nullable=False)
    base_units: Mapped[float | None] = mapped_column(Float, nullable=True)
    weighted_units: Mapped[float | None] = mapped_column(Float, nullable=True)
    job_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(512), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    billing_entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    billing_entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)

    __table_args__ = (
        UniqueConstraint("workspace_id", "idempotency_key", name="uq_usage_events_workspace_idempotency"),
        CheckConstraint("units >= 0", name="ck_usage_events_units"),
        CheckConstraint(
            "resource_type IN ('traffic','storage','compute')",
            name="ck_usage_events_resource_type",
        ),
        CheckConstraint(
            "source IN ('api','file','job','ai')",
            name="ck_usage_events_source",
        ),
        CheckConstraint(
            "billing_entity_type IN ('user','organization')",
            name="ck_usage_events_entity_type",
        ),
        Index("ix_usage_events_workspace_ts", "workspace_id", "timestamp"),
        Index("ix_usage_events_workspace_entity_ts", "workspace_id", "billing_entity_id", "timestamp"),
    )


class StorageSnapshotTable(Base):
    """Daily storage reading per workspace and project.

    ``project_key`` is the project id, or ``""`` for workspace-level
    readings, so that the unique key never contains NULL.
    """

    __tablename__ = "storage_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(128), nullable=False)
    project_key: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    storage_gb: Mapped[float] = mapped_column(Float, nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "workspace_id",
            "project_key",
            "snapshot_date",
            name="uq_storage_snapshots_workspace_project_date",
        ),
        CheckConstraint("storage_gb >= 0", name="ck_storage_snapshots_gb"),
        Index("ix_storage_snapshots_workspace_date", "workspace_id", "snapshot_date"),
    )


# ---------------------------------------------------------------------------
# Aggregations
# ---------------------------------------------------------------------------


class UsageAggregationTable(Base):
    """Monthly usage roll-up.

    ``scope_key`` is the billing entity filter or ``"*"`` for the whole
    workspace.  ``version`` is bumped on every write and used for
    compare-and-set updates.
    """

    __tablename__ = "usage_aggregations"

    aggregation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(128), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    billing_entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    scope_key: Mapped[str] = mapped_column(String(128), nullable=False, default="*")
    traffic_total_gb: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    storage_avg_gb: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    compute_total_units: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("workspace_id", "period", "scope_key", name="uq_usage_aggregations_scope"),
        Index("ix_usage_aggregations_workspace_period", "workspace_id", "period"),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Invoices frozen from a single aggregation.

    The unique ``aggregation_id`` makes the aggregation-to-invoice relation
    one-to-one at the schema level, and ``(workspace_id, period)`` is unique
    so a period is billed once whichever aggregation scope it was frozen from.
    """

    __tablename__ = "invoices"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(128), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    billing_entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    aggregation_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("usage_aggregations.aggregation_id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    traffic_gb: Mapped[float] = mapped_column(Float, nullable=False)
    storage_avg_gb: Mapped[float] = mapped_column(Float, nullable=False)
    compute_units: Mapped[float] = mapped_column(Float, nullable=False)
    traffic_cost: Mapped[Any] = mapped_column(Numeric(14, 4), nullable=False)
    storage_cost: Mapped[Any] = mapped_column(Numeric(14, 4), nullable=False)
    compute_cost: Mapped[Any] = mapped_column(Numeric(14, 4), nullable=False)
    total_cost: Mapped[Any] = mapped_column(Numeric(14, 4), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    finalized_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft','finalized','paid')",
            name="ck_invoices_status",
        ),
        UniqueConstraint("workspace_id", "period", name="uq_invoices_workspace_period"),
        Index("ix_invoices_workspace_created", "workspace_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class UsageAlertTable(Base):
    """Per-workspace usage thresholds."""

    __tablename__ = "usage_alerts"

    alert_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(128), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(16), nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    alert_type: Mapped[str] = mapped_column(String(16), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    webhook_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    last_triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "alert_type IN ('email','in_app','webhook')",
            name="ck_usage_alerts_type",
        ),
        CheckConstraint(
            "resource_type IN ('traffic','storage','compute')",
            name="ck_usage_alerts_resource_type",
        ),
        Index("ix_usage_alerts_workspace", "workspace_id"),
    )
