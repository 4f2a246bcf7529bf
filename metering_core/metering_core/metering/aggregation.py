"""Period aggregator: rolls the ledger up into monthly aggregation records.

Totals are recomputed from the ledger on every call, never incremented,
so a recompute with no new events is bit-identical to the previous one.
Nothing read from the clock enters the totals: storage is always averaged
over the whole calendar month, carrying the latest snapshot forward.
Writes are guarded by the aggregation's ``version`` column: a writer whose
expected version no longer matches re-reads and recomputes, so two
concurrent recomputes serialize instead of losing an update.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from metering_core.config import Settings
from metering_core.context import Action, RequestContext
from metering_core.errors import ConcurrencyConflictError, NotFoundError, PeriodLockedError
from metering_core.metering.costs import Rates, calculate_cost
from metering_core.metering.directory import SqlWorkspaceDirectory, WorkspaceDirectory
from metering_core.metering.periods import parse_period, period_dates
from metering_core.metering.resolver import BillingEntityResolver
from metering_core.metering.storage import StorageSnapshotRecorder, time_weighted_average
from metering_core.models.usage import ResourceType, UsageAggregation, UsageSummary
from metering_core.state.repository import UsageAggregationRepository, UsageEventRepository

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024**3

ALL_ENTITIES = "*"


def scope_key_for(billing_entity_id: str | None) -> str:
    return billing_entity_id or ALL_ENTITIES


@dataclass(frozen=True)
class PeriodTotals:
    traffic_total_gb: float
    storage_avg_gb: float
    compute_total_units: float
    event_count: int
    events_by_source: dict[str, int]
    events_by_resource_type: dict[str, int]


class PeriodAggregator:
    """Computes and persists monthly usage aggregations.

    Parameters
    ----------
    session:
        Session for the caller's transaction.
    settings:
        Supplies the retry budget and billing rates.
    clock:
        Returns "now" for ``created_at``/``updated_at`` stamps.
    directory:
        Workspace/organization lookups used to split storage days between
        billing entities; defaults to the SQL directory.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
        directory: WorkspaceDirectory | None = None,
    ) -> None:
        self._events = UsageEventRepository(session)
        self._aggregations = UsageAggregationRepository(session)
        self._storage = StorageSnapshotRecorder(session)
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))
        self._resolver = BillingEntityResolver(directory or SqlWorkspaceDirectory(session))

    async def _storage_days(
        self,
        ctx: RequestContext,
        workspace_id: str,
        first_day: date,
        end_day: date,
        billing_entity_id: str,
    ) -> set[date]:
        """Days of ``[first_day, end_day)`` whose storage bills to *billing_entity_id*.

        A day belongs to the entity in effect at its first instant (00:00
        UTC), using the same rule that attributes ledger events.
        """
        days: set[date] = set()
        day = first_day
        while day < end_day:
            entity = await self._resolver.resolve(ctx, workspace_id, datetime.combine(day, time(), tzinfo=UTC))
            if entity.entity_id == billing_entity_id:
                days.add(day)
            day += timedelta(days=1)
        return days

    async def _compute_totals(
        self,
        ctx: RequestContext,
        workspace_id: str,
        period: str,
        billing_entity_id: str | None,
    ) -> PeriodTotals:
        start, end = parse_period(period)
        rows = await self._events.units_in_range(workspace_id, start, end, billing_entity_id)

        traffic_bytes = math.fsum(units for rtype, _, units in rows if rtype == ResourceType.TRAFFIC.value)
        compute_units = math.fsum(units for rtype, _, units in rows if rtype == ResourceType.COMPUTE.value)

        first_day, end_day = period_dates(period)
        snapshots = await self._storage.snapshots_for_window(workspace_id, first_day, end_day)
        billed_days = None
        if billing_entity_id is not None:
            billed_days = await self._storage_days(ctx, workspace_id, first_day, end_day, billing_entity_id)
        storage_avg = time_weighted_average(snapshots, first_day, end_day, billed_days)

        return PeriodTotals(
            traffic_total_gb=traffic_bytes / BYTES_PER_GB,
            storage_avg_gb=storage_avg,
            compute_total_units=compute_units,
            event_count=len(rows),
            events_by_source=dict(sorted(Counter(src for _, src, _ in rows).items())),
            events_by_resource_type=dict(sorted(Counter(rtype for rtype, _, _ in rows).items())),
        )

    async def calculate_aggregation(
        self,
        ctx: RequestContext,
        workspace_id: str,
        period: str,
        billing_entity_id: str | None = None,
    ) -> UsageAggregation:
        """Create or overwrite the aggregation for ``(workspace_id, period, billing_entity_id)``.

        Raises
        ------
        ValidationError
            *period* is not ``YYYY-MM``.
        PeriodLockedError
            An aggregation of the period, in this or any other scope, has
            been invoiced.
        ConcurrencyConflictError
            Every retry lost its version check to a concurrent writer.
        """
        parse_period(period)
        await ctx.authorize(workspace_id, Action.CALCULATE_AGGREGATION)
        scope_key = scope_key_for(billing_entity_id)

        for attempt in range(1, self._settings.aggregation_max_retries + 1):
            locked = await self._aggregations.find_locked(workspace_id, period)
            if locked is not None:
                logger.warning(
                    "Recompute rejected: period locked workspace=%s period=%s scope=%s invoice=%s locked_scope=%s",
                    workspace_id,
                    period,
                    scope_key,
                    locked.invoice_id,
                    locked.scope_key,
                )
                raise PeriodLockedError(workspace_id, period)

            current = await self._aggregations.get(workspace_id, period, scope_key)
            totals = await self._compute_totals(ctx, workspace_id, period, billing_entity_id)
            now = self._clock()
            values = {
                "traffic_total_gb": totals.traffic_total_gb,
                "storage_avg_gb": totals.storage_avg_gb,
                "compute_total_units": totals.compute_total_units,
                "event_count": totals.event_count,
                "updated_at": now,
            }

            if current is None:
                aggregation_id = f"agg-{uuid.uuid4().hex[:20]}"
                written = await self._aggregations.insert_new(
                    {
                        "aggregation_id": aggregation_id,
                        "workspace_id": workspace_id,
                        "period": period,
                        "billing_entity_id": billing_entity_id,
                        "scope_key": scope_key,
                        "is_finalized": False,
                        "created_at": now,
                        **values,
                    }
                )
            else:
                aggregation_id = current.aggregation_id
                written = await self._aggregations.update_if_version(aggregation_id, current.version, values)

            if written:
                row = await self._aggregations.get_by_id(aggregation_id)
                if row is None:
                    raise NotFoundError(f"Aggregation {aggregation_id} vanished after write")
                logger.info(
                    "Aggregation %s workspace=%s period=%s scope=%s version=%d events=%d",
                    aggregation_id,
                    workspace_id,
                    period,
                    scope_key,
                    row.version,
                    row.event_count,
                )
                return UsageAggregation.from_row(row)

            logger.info(
                "Aggregation write conflict workspace=%s period=%s scope=%s attempt=%d; retrying",
                workspace_id,
                period,
                scope_key,
                attempt,
            )

        raise ConcurrencyConflictError(
            f"Aggregation for workspace {workspace_id} period {period} kept conflicting after "
            f"{self._settings.aggregation_max_retries} attempts"
        )

    async def get_aggregation(
        self,
        ctx: RequestContext,
        workspace_id: str,
        period: str,
        billing_entity_id: str | None = None,
    ) -> UsageAggregation | None:
        parse_period(period)
        await ctx.authorize(workspace_id, Action.VIEW_USAGE)
        row = await self._aggregations.get(workspace_id, period, scope_key_for(billing_entity_id))
        return UsageAggregation.from_row(row) if row is not None else None

    async def list_aggregations(
        self,
        ctx: RequestContext,
        workspace_id: str,
        start_period: str | None = None,
        end_period: str | None = None,
    ) -> list[UsageAggregation]:
        for p in (start_period, end_period):
            if p is not None:
                parse_period(p)
        await ctx.authorize(workspace_id, Action.VIEW_USAGE)
        rows = await self._aggregations.list(workspace_id, start_period, end_period)
        return [UsageAggregation.from_row(r) for r in rows]

    async def summarize(
        self,
        ctx: RequestContext,
        workspace_id: str,
        period: str,
        billing_entity_id: str | None = None,
    ) -> UsageSummary:
        """Current totals and estimated cost for a period, without persisting anything."""
        parse_period(period)
        await ctx.authorize(workspace_id, Action.VIEW_USAGE)
        totals = await self._compute_totals(ctx, workspace_id, period, billing_entity_id)
        cost = calculate_cost(
            totals.traffic_total_gb,
            totals.storage_avg_gb,
            totals.compute_total_units,
            Rates.from_settings(self._settings),
        )
        return UsageSummary(
            workspace_id=workspace_id,
            period=period,
            billing_entity_id=billing_entity_id,
            traffic_gb=totals.traffic_total_gb,
            storage_avg_gb=totals.storage_avg_gb,
            compute_units=totals.compute_total_units,
            event_count=totals.event_count,
            estimated_cost=cost,
            events_by_source=totals.events_by_source,
            events_by_resource_type=totals.events_by_resource_type,
        )
