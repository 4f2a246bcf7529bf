"""Unit tests for usage alerts."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from metering_core.errors import NotFoundError, ValidationError
from metering_core.metering.alerts import AlertEvaluator, usage_from_summary
from metering_core.models import (
    AlertType,
    CostBreakdown,
    FiredAlert,
    ResourceType,
    UsageAlertCreate,
    UsageAlertUpdate,
    UsageSummary,
)

_T0 = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _CollectingNotifier:
    def __init__(self) -> None:
        self.fired: list[FiredAlert] = []

    async def notify(self, fired: FiredAlert) -> None:
        self.fired.append(fired)


def _create(resource_type=ResourceType.TRAFFIC, threshold=10.0, **extra) -> UsageAlertCreate:
    values = {
        "workspace_id": "ws-1",
        "resource_type": resource_type,
        "threshold": threshold,
        "alert_type": AlertType.IN_APP,
    }
    values.update(extra)
    return UsageAlertCreate(**values)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


class TestAlertCrud:
    @pytest.mark.asyncio
    async def test_create_and_get(self, session, settings, ctx) -> None:
        evaluator = AlertEvaluator(session, settings)
        alert = await evaluator.create_alert(ctx, _create())

        assert alert.alert_id.startswith("alert-")
        assert alert.created_by == "test-runner"
        assert alert.last_triggered_at is None
        assert (await evaluator.get_alert(ctx, alert.alert_id)).threshold == 10.0

    @pytest.mark.asyncio
    async def test_webhook_requires_url(self, session, settings, ctx) -> None:
        with pytest.raises(ValidationError, match="webhook_url"):
            await AlertEvaluator(session, settings).create_alert(ctx, _create(alert_type=AlertType.WEBHOOK))

    @pytest.mark.asyncio
    async def test_webhook_url_must_be_http(self, session, settings, ctx) -> None:
        with pytest.raises(ValidationError):
            await AlertEvaluator(session, settings).create_alert(
                ctx, _create(alert_type=AlertType.WEBHOOK, webhook_url="ftp://hooks.example.com")
            )

    @pytest.mark.asyncio
    async def test_update(self, session, settings, ctx) -> None:
        evaluator = AlertEvaluator(session, settings)
        alert = await evaluator.create_alert(ctx, _create())
        updated = await evaluator.update_alert(ctx, alert.alert_id, UsageAlertUpdate(threshold=50.0, is_enabled=False))

        assert updated.threshold == 50.0
        assert updated.is_enabled is False
        assert updated.alert_type == AlertType.IN_APP

    @pytest.mark.asyncio
    async def test_update_to_webhook_without_url_rejected(self, session, settings, ctx) -> None:
        evaluator = AlertEvaluator(session, settings)
        alert = await evaluator.create_alert(ctx, _create())
        with pytest.raises(ValidationError):
            await evaluator.update_alert(ctx, alert.alert_id, UsageAlertUpdate(alert_type=AlertType.WEBHOOK))

    @pytest.mark.asyncio
    async def test_delete(self, session, settings, ctx) -> None:
        evaluator = AlertEvaluator(session, settings)
        alert = await evaluator.create_alert(ctx, _create())
        await evaluator.delete_alert(ctx, alert.alert_id)

        with pytest.raises(NotFoundError):
            await evaluator.get_alert(ctx, alert.alert_id)
        assert await evaluator.list_alerts(ctx, "ws-1") == []


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class TestEvaluateAlerts:
    @pytest.mark.asyncio
    async def test_fires_at_threshold(self, session, settings, ctx) -> None:
        notifier = _CollectingNotifier()
        evaluator = AlertEvaluator(session, settings, notifier=notifier, clock=_Clock(_T0))
        alert = await evaluator.create_alert(ctx, _create(threshold=10.0))

        fired = await evaluator.evaluate_alerts(ctx, "ws-1", {ResourceType.TRAFFIC: 10.0})

        assert [f.alert.alert_id for f in fired] == [alert.alert_id]
        assert fired[0].current_usage == 10.0
        assert fired[0].fired_at == _T0
        assert notifier.fired == fired
        stored = await evaluator.get_alert(ctx, alert.alert_id)
        assert stored.last_triggered_at == _T0

    @pytest.mark.asyncio
    async def test_below_threshold_does_not_fire(self, session, settings, ctx) -> None:
        evaluator = AlertEvaluator(session, settings, clock=_Clock(_T0))
        await evaluator.create_alert(ctx, _create(threshold=10.0))
        assert await evaluator.evaluate_alerts(ctx, "ws-1", {ResourceType.TRAFFIC: 9.99}) == []

    @pytest.mark.asyncio
    async def test_only_matching_resource(self, session, settings, ctx) -> None:
        evaluator = AlertEvaluator(session, settings, clock=_Clock(_T0))
        await evaluator.create_alert(ctx, _create(resource_type=ResourceType.STORAGE, threshold=1.0))
        assert await evaluator.evaluate_alerts(ctx, "ws-1", {ResourceType.TRAFFIC: 100.0}) == []

    @pytest.mark.asyncio
    async def test_disabled_alert_ignored(self, session, settings, ctx) -> None:
        evaluator = AlertEvaluator(session, settings, clock=_Clock(_T0))
        await evaluator.create_alert(ctx, _create(threshold=1.0, is_enabled=False))
        assert await evaluator.evaluate_alerts(ctx, "ws-1", {ResourceType.TRAFFIC: 5.0}) == []

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_then_expires(self, session, settings, ctx) -> None:
        clock = _Clock(_T0)
        evaluator = AlertEvaluator(session, settings, clock=clock)
        await evaluator.create_alert(ctx, _create(threshold=1.0))
        usage = {ResourceType.TRAFFIC: 2.0}

        assert len(await evaluator.evaluate_alerts(ctx, "ws-1", usage)) == 1

        clock.now = _T0 + timedelta(minutes=30)
        assert await evaluator.evaluate_alerts(ctx, "ws-1", usage) == []

        clock.now = _T0 + timedelta(seconds=settings.alert_cooldown_seconds)
        assert len(await evaluator.evaluate_alerts(ctx, "ws-1", usage)) == 1


class TestUsageFromSummary:
    def test_maps_each_dimension(self) -> None:
        summary = UsageSummary(
            workspace_id="ws-1",
            period="2024-03",
            traffic_gb=1.0,
            storage_avg_gb=2.0,
            compute_units=3.0,
            event_count=0,
            estimated_cost=CostBreakdown(traffic=0, storage=0, compute=0, total=0),
        )
        assert usage_from_summary(summary) == {
            ResourceType.TRAFFIC: 1.0,
            ResourceType.STORAGE: 2.0,
            ResourceType.COMPUTE: 3.0,
        }
