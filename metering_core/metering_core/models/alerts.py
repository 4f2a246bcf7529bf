"""Usage alert models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from metering_core.models.usage import ResourceType


class AlertType(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class UsageAlert(BaseModel):
    """A threshold on one resource dimension of a workspace's current-period usage."""

    alert_id: str
    workspace_id: str
    resource_type: ResourceType
    threshold: float
    alert_type: AlertType
    is_enabled: bool = True
    webhook_url: str | None = None
    created_by: str
    last_triggered_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> UsageAlert:
        return cls(
            alert_id=row.alert_id,
            workspace_id=row.workspace_id,
            resource_type=ResourceType(row.resource_type),
            threshold=row.threshold,
            alert_type=AlertType(row.alert_type),
            is_enabled=row.is_enabled,
            webhook_url=row.webhook_url,
            created_by=row.created_by,
            last_triggered_at=row.last_triggered_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class UsageAlertCreate(BaseModel):
    workspace_id: str = Field(min_length=1)
    resource_type: ResourceType
    threshold: float = Field(gt=0)
    alert_type: AlertType
    webhook_url: str | None = None
    is_enabled: bool = True


class UsageAlertUpdate(BaseModel):
    threshold: float | None = Field(default=None, gt=0)
    alert_type: AlertType | None = None
    webhook_url: str | None = None
    is_enabled: bool | None = None


class FiredAlert(BaseModel):
    """An alert that crossed its threshold during evaluation."""

    alert: UsageAlert
    current_usage: float
    fired_at: datetime
