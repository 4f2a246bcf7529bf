"""Initial schema for the metering state store.

Creates the directory tables (organizations, workspaces, billing_accounts),
the append-only usage ledger, storage snapshots, aggregations, invoices
and usage alerts.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # ------------------------------------------------------------------
    # directory
    # ------------------------------------------------------------------
    op.create_table(
        "organizations",
        sa.Column("organization_id", sa.String(128), primary_key=True),
        sa.Column("name", sa.String(256), nullable=True),
        _ts("billing_start_at", nullable=True),
        _ts("created_at"),
    )

    op.create_table(
        "workspaces",
        sa.Column("workspace_id", sa.String(128), primary_key=True),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("owner_user_id", sa.String(128), nullable=False),
        sa.Column("organization_id", sa.String(128), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_workspaces_organization", "workspaces", ["organization_id"])

    op.create_table(
        "billing_accounts",
        sa.Column("account_id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(128), nullable=False, unique=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('active','due','suspended')", name="ck_billing_accounts_status"),
    )

    # ------------------------------------------------------------------
    # usage_events
    # ------------------------------------------------------------------
    op.create_table(
        "usage_events",
        sa.Column("event_id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(128), nullable=False),
        sa.Column("project_id", sa.String(128), nullable=True),
        sa.Column("resource_type", sa.String(16), nullable=False),
        sa.Column("units", sa.Float(), nullable=False),
        sa.Column("base_units", sa.Float(), nullable=True),
        sa.Column("weighted_units", sa.Float(), nullable=True),
        sa.Column("job_type", sa.String(64), nullable=True),
        sa.Column("idempotency_key", sa.String(512), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        _ts("ingested_at"),
        sa.Column("source", sa.String(16), nullable=False),
        sa.Column("billing_entity_id", sa.String(128), nullable=False),
        sa.Column("billing_entity_type", sa.String(16), nullable=False),
        sa.Column("metadata_json", _JSON, nullable=True),
        sa.UniqueConstraint("workspace_id", "idempotency_key", name="uq_usage_events_workspace_idempotency"),
        sa.CheckConstraint("units >= 0", name="ck_usage_events_units"),
        sa.CheckConstraint("resource_type IN ('traffic','storage','compute')", name="ck_usage_events_resource_type"),
        sa.CheckConstraint("source IN ('api','file','job','ai')", name="ck_usage_events_source"),
        sa.CheckConstraint("billing_entity_type IN ('user','organization')", name="ck_usage_events_entity_type"),
    )
    op.create_index("ix_usage_events_workspace_ts", "usage_events", ["workspace_id", "timestamp"])
    op.create_index(
        "ix_usage_events_workspace_entity_ts",
        "usage_events",
        ["workspace_id", "billing_entity_id", "timestamp"],
    )

    # ------------------------------------------------------------------
    # storage_snapshots
    # ------------------------------------------------------------------
    op.create_table(
        "storage_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(128), nullable=False),
        sa.Column("project_key", sa.String(128), nullable=False, server_default=""),
        sa.Column("storage_gb", sa.Float(), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        _ts("recorded_at"),
        sa.UniqueConstraint(
            "workspace_id",
            "project_key",
            "snapshot_date",
            name="uq_storage_snapshots_workspace_project_date",
        ),
        sa.CheckConstraint("storage_gb >= 0", name="ck_storage_snapshots_gb"),
    )
    op.create_index("ix_storage_snapshots_workspace_date", "storage_snapshots", ["workspace_id", "snapshot_date"])

    # ------------------------------------------------------------------
    # usage_aggregations
    # ------------------------------------------------------------------
    op.create_table(
        "usage_aggregations",
        sa.Column("aggregation_id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(128), nullable=False),
        sa.Column("period", sa.String(7), nullable=False),
        sa.Column("billing_entity_id", sa.String(128), nullable=True),
        sa.Column("scope_key", sa.String(128), nullable=False, server_default="*"),
        sa.Column("traffic_total_gb", sa.Float(), nullable=False, server_default="0"),
        sa.Column("storage_avg_gb", sa.Float(), nullable=False, server_default="0"),
        sa.Column("compute_total_units", sa.Float(), nullable=False, server_default="0"),
        sa.Column("event_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_finalized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("invoice_id", sa.String(64), nullable=True),
        _ts("finalized_at", nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("workspace_id", "period", "scope_key", name="uq_usage_aggregations_scope"),
    )
    op.create_index("ix_usage_aggregations_workspace_period", "usage_aggregations", ["workspace_id", "period"])

    # ------------------------------------------------------------------
    # invoices
    # ------------------------------------------------------------------
    op.create_table(
        "invoices",
        sa.Column("invoice_id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(128), nullable=False),
        sa.Column("period", sa.String(7), nullable=False),
        sa.Column("billing_entity_id", sa.String(128), nullable=True),
        sa.Column(
            "aggregation_id",
            sa.String(64),
            sa.ForeignKey("usage_aggregations.aggregation_id", ondelete="RESTRICT"),
            nullable=False,
            unique=True,
        ),
        sa.Column("traffic_gb", sa.Float(), nullable=False),
        sa.Column("storage_avg_gb", sa.Float(), nullable=False),
        sa.Column("compute_units", sa.Float(), nullable=False),
        sa.Column("traffic_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("storage_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("compute_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("total_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        _ts("created_at"),
        _ts("finalized_at", nullable=True),
        _ts("paid_at", nullable=True),
        sa.CheckConstraint("status IN ('draft','finalized','paid')", name="ck_invoices_status"),
        sa.UniqueConstraint("workspace_id", "period", name="uq_invoices_workspace_period"),
    )
    op.create_index("ix_invoices_workspace_created", "invoices", ["workspace_id", "created_at"])

    # ------------------------------------------------------------------
    # usage_alerts
    # ------------------------------------------------------------------
    op.create_table(
        "usage_alerts",
        sa.Column("alert_id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(128), nullable=False),
        sa.Column("resource_type", sa.String(16), nullable=False),
        sa.Column("threshold", sa.Float(), nullable=False),
        sa.Column("alert_type", sa.String(16), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("webhook_url", sa.String(2048), nullable=True),
        sa.Column("created_by", sa.String(128), nullable=False),
        _ts("last_triggered_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("alert_type IN ('email','in_app','webhook')", name="ck_usage_alerts_type"),
        sa.CheckConstraint(
            "resource_type IN ('traffic','storage','compute')",
            name="ck_usage_alerts_resource_type",
        ),
    )
    op.create_index("ix_usage_alerts_workspace", "usage_alerts", ["workspace_id"])


def downgrade() -> None:
    op.drop_table("usage_alerts")
    op.drop_table("invoices")
    op.drop_table("usage_aggregations")
    op.drop_table("storage_snapshots")
    op.drop_table("usage_events")
    op.drop_table("billing_accounts")
    op.drop_table("workspaces")
    op.drop_table("organizations")
