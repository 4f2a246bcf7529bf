"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from metering_core.state.database import get_engine, get_session
from metering_core.state.repository import (
    BillingAccountRepository,
    InvoiceRepository,
    OrganizationRepository,
    StorageSnapshotRepository,
    UsageAggregationRepository,
    UsageAlertRepository,
    UsageEventRepository,
    WorkspaceRepository,
)

__all__ = [
    "BillingAccountRepository",
    "InvoiceRepository",
    "OrganizationRepository",
    "StorageSnapshotRepository",
    "UsageAggregationRepository",
    "UsageAlertRepository",
    "UsageEventRepository",
    "WorkspaceRepository",
    "get_engine",
    "get_session",
]
