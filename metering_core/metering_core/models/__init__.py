"""Domain models for the metering engine."""

from metering_core.models.alerts import (
    AlertType,
    FiredAlert,
    UsageAlert,
    UsageAlertCreate,
    UsageAlertUpdate,
)
from metering_core.models.billing import (
    BillingAccountStatus,
    CostBreakdown,
    Invoice,
    InvoiceStatus,
    OrganizationRecord,
    WorkspaceRecord,
)
from metering_core.models.usage import (
    BillingEntity,
    BillingEntityType,
    IngestResult,
    ResourceType,
    StorageDailySnapshot,
    UsageAggregation,
    UsageEvent,
    UsageEventInput,
    UsageSource,
    UsageSummary,
)

__all__ = [
    "AlertType",
    "BillingAccountStatus",
    "BillingEntity",
    "BillingEntityType",
    "CostBreakdown",
    "FiredAlert",
    "IngestResult",
    "Invoice",
    "InvoiceStatus",
    "OrganizationRecord",
    "ResourceType",
    "StorageDailySnapshot",
    "UsageAggregation",
    "UsageAlert",
    "UsageAlertCreate",
    "UsageAlertUpdate",
    "UsageEvent",
    "UsageEventInput",
    "UsageSource",
    "UsageSummary",
    "WorkspaceRecord",
]
