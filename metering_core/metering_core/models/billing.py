"""Billing models: invoices, cost breakdowns and collaborator records."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class InvoiceStatus(str, Enum):
    """Invoice lifecycle: draft -> finalized -> paid."""

    DRAFT = "draft"
    FINALIZED = "finalized"
    PAID = "paid"


class BillingAccountStatus(str, Enum):
    ACTIVE = "active"
    DUE = "due"
    SUSPENDED = "suspended"


class CostBreakdown(BaseModel):
    """Per-dimension cost in USD, each component rounded to 4 decimal places."""

    model_config = ConfigDict(frozen=True)

    traffic: Decimal
    storage: Decimal
    compute: Decimal
    total: Decimal


class Invoice(BaseModel):
    """An invoice frozen from exactly one aggregation.

    Attributes
    ----------
    invoice_id:
        Human-readable identifier, ``INV-<WS6>-<YYYYMM>-<suffix>``.
    aggregation_snapshot_id:
        The aggregation this invoice was generated from.  One-to-one.
    status:
        Current lifecycle state.
    """

    invoice_id: str
    workspace_id: str
    period: str
    billing_entity_id: str | None = None
    traffic_gb: float
    storage_avg_gb: float
    compute_units: float
    traffic_cost: Decimal
    storage_cost: Decimal
    compute_cost: Decimal
    total_cost: Decimal
    aggregation_snapshot_id: str
    status: InvoiceStatus = InvoiceStatus.DRAFT
    created_at: datetime | None = None
    finalized_at: datetime | None = None
    paid_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> Invoice:
        return cls(
            invoice_id=row.invoice_id,
            workspace_id=row.workspace_id,
            period=row.period,
            billing_entity_id=row.billing_entity_id,
            traffic_gb=row.traffic_gb,
            storage_avg_gb=row.storage_avg_gb,
            compute_units=row.compute_units,
            traffic_cost=Decimal(str(row.traffic_cost)),
            storage_cost=Decimal(str(row.storage_cost)),
            compute_cost=Decimal(str(row.compute_cost)),
            total_cost=Decimal(str(row.total_cost)),
            aggregation_snapshot_id=row.aggregation_id,
            status=InvoiceStatus(row.status),
            created_at=row.created_at,
            finalized_at=row.finalized_at,
            paid_at=row.paid_at,
        )


class WorkspaceRecord(BaseModel):
    """Ownership facts the resolver needs about a workspace."""

    workspace_id: str
    owner_user_id: str
    organization_id: str | None = None


class OrganizationRecord(BaseModel):
    organization_id: str
    billing_start_at: datetime | None = None
