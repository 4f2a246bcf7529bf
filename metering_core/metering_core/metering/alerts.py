"""Usage alerts: threshold definitions and evaluation against current usage."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from metering_core.config import Settings
from metering_core.context import Action, RequestContext
from metering_core.errors import NotFoundError, ValidationError
from metering_core.models.alerts import (
    AlertType,
    FiredAlert,
    UsageAlert,
    UsageAlertCreate,
    UsageAlertUpdate,
)
from metering_core.models.usage import ResourceType, UsageSummary
from metering_core.state.repository import UsageAlertRepository

logger = logging.getLogger(__name__)


class AlertNotifier(Protocol):
    """Delivers a fired alert (email, in-app, webhook).  Owned by the host application."""

    async def notify(self, fired: FiredAlert) -> None: ...


class LoggingNotifier:
    """Default notifier: records the firing in the log only."""

    async def notify(self, fired: FiredAlert) -> None:
        logger.info(
            "Usage alert fired: alert=%s workspace=%s resource=%s usage=%s threshold=%s channel=%s",
            fired.alert.alert_id,
            fired.alert.workspace_id,
            fired.alert.resource_type.value,
            fired.current_usage,
            fired.alert.threshold,
            fired.alert.alert_type.value,
        )


def usage_from_summary(summary: UsageSummary) -> dict[ResourceType, float]:
    """Map a period summary to the per-resource figures alerts compare against."""
    return {
        ResourceType.TRAFFIC: summary.traffic_gb,
        ResourceType.STORAGE: summary.storage_avg_gb,
        ResourceType.COMPUTE: summary.compute_units,
    }


def _check_webhook(alert_type: AlertType, webhook_url: str | None) -> None:
    if alert_type == AlertType.WEBHOOK:
        if not webhook_url:
            raise ValidationError("webhook alerts require a webhook_url")
        if not webhook_url.startswith(("https://", "http://")):
            raise ValidationError("webhook_url must be an http(s) URL")


class AlertEvaluator:
    """CRUD over alert definitions and threshold evaluation.

    An alert fires when usage for its resource type is at or above its
    threshold.  A fired alert will not fire again until
    ``alert_cooldown_seconds`` have passed since ``last_triggered_at``.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        notifier: AlertNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._alerts = UsageAlertRepository(session)
        self._settings = settings
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def create_alert(self, ctx: RequestContext, data: UsageAlertCreate) -> UsageAlert:
        await ctx.authorize(data.workspace_id, Action.MANAGE_ALERTS)
        _check_webhook(data.alert_type, data.webhook_url)
        row = await self._alerts.create(
            alert_id=f"alert-{uuid.uuid4().hex[:16]}",
            workspace_id=data.workspace_id,
            resource_type=data.resource_type.value,
            threshold=data.threshold,
            alert_type=data.alert_type.value,
            is_enabled=data.is_enabled,
            webhook_url=data.webhook_url,
            created_by=ctx.principal,
        )
        logger.info("Created usage alert %s for workspace %s", row.alert_id, data.workspace_id)
        return UsageAlert.from_row(row)

    async def get_alert(self, ctx: RequestContext, alert_id: str) -> UsageAlert:
        row = await self._alerts.get(alert_id)
        if row is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        await ctx.authorize(row.workspace_id, Action.VIEW_USAGE)
        return UsageAlert.from_row(row)

    async def list_alerts(self, ctx: RequestContext, workspace_id: str) -> list[UsageAlert]:
        await ctx.authorize(workspace_id, Action.VIEW_USAGE)
        return [UsageAlert.from_row(r) for r in await self._alerts.list_for_workspace(workspace_id)]

    async def update_alert(self, ctx: RequestContext, alert_id: str, data: UsageAlertUpdate) -> UsageAlert:
        current = await self.get_alert(ctx, alert_id)
        await ctx.authorize(current.workspace_id, Action.MANAGE_ALERTS)

        changes = data.model_dump(exclude_unset=True)
        alert_type = changes.get("alert_type", current.alert_type)
        webhook_url = changes.get("webhook_url", current.webhook_url)
        _check_webhook(AlertType(alert_type), webhook_url)

        values = {k: (v.value if isinstance(v, AlertType) else v) for k, v in changes.items()}
        await self._alerts.update(alert_id, **values)
        row = await self._alerts.get(alert_id)
        if row is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return UsageAlert.from_row(row)

    async def delete_alert(self, ctx: RequestContext, alert_id: str) -> None:
        current = await self.get_alert(ctx, alert_id)
        await ctx.authorize(current.workspace_id, Action.MANAGE_ALERTS)
        await self._alerts.delete(alert_id)
        logger.info("Deleted usage alert %s", alert_id)

    async def evaluate_alerts(
        self,
        ctx: RequestContext,
        workspace_id: str,
        current_usage: Mapping[ResourceType, float],
    ) -> list[FiredAlert]:
        """Fire every enabled alert whose resource usage has reached its threshold.

        Parameters
        ----------
        current_usage:
            Current-period usage per resource type (traffic GB, average
            storage GB, weighted compute units).  Missing types count as 0.

        Returns
        -------
        list[FiredAlert]
            Alerts that fired on this call, in creation order.
        """
        await ctx.authorize(workspace_id, Action.MANAGE_ALERTS)
        now = self._clock()
        cutoff = now - timedelta(seconds=self._settings.alert_cooldown_seconds)

        fired: list[FiredAlert] = []
        for row in await self._alerts.list_for_workspace(workspace_id, enabled_only=True):
            alert = UsageAlert.from_row(row)
            usage = float(current_usage.get(alert.resource_type, 0.0))
            if usage < alert.threshold:
                continue
            if not await self._alerts.mark_triggered(alert.alert_id, now, cutoff):
                logger.debug("Alert %s suppressed by cooldown", alert.alert_id)
                continue

            event = FiredAlert(
                alert=alert.model_copy(update={"last_triggered_at": now}),
                current_usage=usage,
                fired_at=now,
            )
            await self._notifier.notify(event)
            fired.append(event)
        return fired
