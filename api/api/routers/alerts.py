"""Usage alert definitions and threshold evaluation."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Query, Response
from metering_core.metering.alerts import usage_from_summary
from metering_core.metering.periods import period_of
from metering_core.models import UsageAlert, UsageAlertCreate, UsageAlertUpdate

from api.dependencies import AggregatorDep, AlertEvaluatorDep, ContextDep
from api.schemas import AlertEvaluateRequest, AlertEvaluateResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage/alerts", tags=["alerts"])


@router.get("", response_model=list[UsageAlert])
async def list_alerts(
    ctx: ContextDep,
    evaluator: AlertEvaluatorDep,
    workspace_id: str = Query(min_length=1),
) -> list[UsageAlert]:
    return await evaluator.list_alerts(ctx, workspace_id)


@router.post("", response_model=UsageAlert, status_code=201)
async def create_alert(body: UsageAlertCreate, ctx: ContextDep, evaluator: AlertEvaluatorDep) -> UsageAlert:
    return await evaluator.create_alert(ctx, body)


@router.post("/evaluate", response_model=AlertEvaluateResponse)
async def evaluate_alerts(
    body: AlertEvaluateRequest,
    ctx: ContextDep,
    evaluator: AlertEvaluatorDep,
    aggregator: AggregatorDep,
) -> AlertEvaluateResponse:
    """Fire the workspace's alerts whose thresholds the period's usage has reached.

    Usage defaults to the live summary of the period; callers that already
    hold the figures may pass ``current_usage`` instead.
    """
    period = body.period or period_of(datetime.now(UTC))
    if body.current_usage is not None:
        usage = body.current_usage
    else:
        summary = await aggregator.summarize(ctx, body.workspace_id, period)
        usage = usage_from_summary(summary)
    fired = await evaluator.evaluate_alerts(ctx, body.workspace_id, usage)
    return AlertEvaluateResponse(period=period, fired=fired)


@router.patch("/{alert_id}", response_model=UsageAlert)
async def update_alert(
    alert_id: str,
    body: UsageAlertUpdate,
    ctx: ContextDep,
    evaluator: AlertEvaluatorDep,
) -> UsageAlert:
    return await evaluator.update_alert(ctx, alert_id, body)


@router.delete("/{alert_id}", status_code=204)
async def delete_alert(alert_id: str, ctx: ContextDep, evaluator: AlertEvaluatorDep) -> Response:
    await evaluator.delete_alert(ctx, alert_id)
    return Response(status_code=204)
