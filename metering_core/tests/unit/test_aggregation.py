"""Unit tests for the period aggregator."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest
from metering_core.config import load_settings
from metering_core.errors import ConcurrencyConflictError, PeriodLockedError, ValidationError
from metering_core.metering.aggregation import BYTES_PER_GB, PeriodAggregator, scope_key_for
from metering_core.metering.ingestion import UsageIngestionGate
from metering_core.metering.invoicing import InvoiceGenerator
from metering_core.metering.storage import StorageSnapshotRecorder
from metering_core.models import ResourceType, UsageEventInput, UsageSource
from metering_core.state.repository import UsageAggregationRepository

PERIOD = "2024-03"


async def _ingest(session, settings, ctx, workspace_id, key, resource_type, units, ts, **extra):
    gate = UsageIngestionGate(session, settings)
    return await gate.record_usage_event(
        ctx,
        UsageEventInput(
            workspace_id=workspace_id,
            resource_type=resource_type,
            units=units,
            timestamp=ts,
            idempotency_key=key,
            **extra,
        ),
    )


async def _two_gib(session, settings, ctx, workspace_id) -> None:
    for i, day in enumerate((3, 17)):
        await _ingest(
            session,
            settings,
            ctx,
            workspace_id,
            f"t-{i}",
            ResourceType.TRAFFIC,
            float(BYTES_PER_GB),
            datetime(2024, 3, day, tzinfo=UTC),
        )


class TestScopeKey:
    def test_no_entity(self) -> None:
        assert scope_key_for(None) == "*"

    def test_entity(self) -> None:
        assert scope_key_for("org-1") == "org-1"


# ---------------------------------------------------------------------------
# calculate_aggregation
# ---------------------------------------------------------------------------


class TestCalculateAggregation:
    @pytest.mark.asyncio
    async def test_traffic_bytes_become_gb(self, session, settings, ctx, workspace) -> None:
        await _two_gib(session, settings, ctx, workspace)
        agg = await PeriodAggregator(session, settings).calculate_aggregation(ctx, workspace, PERIOD)

        assert agg.traffic_total_gb == 2.0
        assert agg.event_count == 2
        assert agg.version == 1
        assert agg.is_finalized is False
        assert agg.aggregation_id.startswith("agg-")

    @pytest.mark.asyncio
    async def test_compute_uses_weighted_units(self, session, settings, ctx, workspace) -> None:
        await _ingest(
            session, settings, ctx, workspace, "c-1", ResourceType.COMPUTE, 2.0, datetime(2024, 3, 5, tzinfo=UTC),
            job_type="export", source=UsageSource.JOB,
        )
        await _ingest(
            session, settings, ctx, workspace, "c-2", ResourceType.COMPUTE, 1.0, datetime(2024, 3, 6, tzinfo=UTC)
        )
        agg = await PeriodAggregator(session, settings).calculate_aggregation(ctx, workspace, PERIOD)
        assert agg.compute_total_units == 21.0

    @pytest.mark.asyncio
    async def test_events_outside_period_ignored(self, session, settings, ctx, workspace) -> None:
        await _two_gib(session, settings, ctx, workspace)
        await _ingest(
            session, settings, ctx, workspace, "t-april", ResourceType.TRAFFIC, float(BYTES_PER_GB),
            datetime(2024, 4, 1, tzinfo=UTC),
        )
        await _ingest(
            session, settings, ctx, workspace, "t-feb", ResourceType.TRAFFIC, float(BYTES_PER_GB),
            datetime(2024, 2, 29, 23, 59, 59, tzinfo=UTC),
        )
        agg = await PeriodAggregator(session, settings).calculate_aggregation(ctx, workspace, PERIOD)
        assert agg.traffic_total_gb == 2.0
        assert agg.event_count == 2

    @pytest.mark.asyncio
    async def test_storage_average_over_closed_period(self, session, settings, ctx, workspace) -> None:
        recorder = StorageSnapshotRecorder(session)
        await recorder.record_storage_snapshot(ctx, workspace, 10.0, snapshot_date=date(2024, 2, 20))
        await recorder.record_storage_snapshot(ctx, workspace, 41.0, snapshot_date=date(2024, 3, 21))
        agg = await PeriodAggregator(session, settings).calculate_aggregation(ctx, workspace, PERIOD)
        # 10 GB for 20 days, 41 GB for 11 days.
        assert agg.storage_avg_gb == pytest.approx((10 * 20 + 41 * 11) / 31)

    @pytest.mark.asyncio
    async def test_storage_window_is_whole_month_whatever_the_clock(self, session, settings, ctx, workspace):
        recorder = StorageSnapshotRecorder(session)
        await recorder.record_storage_snapshot(ctx, workspace, 20.0, snapshot_date=date(2024, 3, 6))
        mid_month = PeriodAggregator(session, settings, clock=lambda: datetime(2024, 3, 10, 15, tzinfo=UTC))
        later = PeriodAggregator(session, settings, clock=lambda: datetime(2024, 4, 20, tzinfo=UTC))

        first = await mid_month.calculate_aggregation(ctx, workspace, PERIOD)
        second = await later.calculate_aggregation(ctx, workspace, PERIOD)
        assert first.storage_avg_gb == pytest.approx(20.0 * 26 / 31)
        assert second.storage_avg_gb == first.storage_avg_gb

    @pytest.mark.asyncio
    async def test_storage_carries_forward_into_later_period(self, session, settings, ctx, workspace) -> None:
        await StorageSnapshotRecorder(session).record_storage_snapshot(
            ctx, workspace, 5.0, snapshot_date=date(2024, 2, 1)
        )
        aggregator = PeriodAggregator(session, settings, clock=lambda: datetime(2024, 2, 10, tzinfo=UTC))
        agg = await aggregator.calculate_aggregation(ctx, workspace, PERIOD)
        assert agg.storage_avg_gb == 5.0

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(self, session, settings, ctx, workspace) -> None:
        await _two_gib(session, settings, ctx, workspace)
        aggregator = PeriodAggregator(session, settings)
        first = await aggregator.calculate_aggregation(ctx, workspace, PERIOD)
        second = await aggregator.calculate_aggregation(ctx, workspace, PERIOD)

        assert second.aggregation_id == first.aggregation_id
        assert second.version == first.version + 1
        assert (second.traffic_total_gb, second.storage_avg_gb, second.compute_total_units, second.event_count) == (
            first.traffic_total_gb,
            first.storage_avg_gb,
            first.compute_total_units,
            first.event_count,
        )

    @pytest.mark.asyncio
    async def test_recompute_picks_up_late_events(self, session, settings, ctx, workspace) -> None:
        aggregator = PeriodAggregator(session, settings)
        await _two_gib(session, settings, ctx, workspace)
        await aggregator.calculate_aggregation(ctx, workspace, PERIOD)
        await _ingest(
            session, settings, ctx, workspace, "late", ResourceType.TRAFFIC, float(BYTES_PER_GB),
            datetime(2024, 3, 30, tzinfo=UTC),
        )
        agg = await aggregator.calculate_aggregation(ctx, workspace, PERIOD)
        assert agg.traffic_total_gb == 3.0

    @pytest.mark.asyncio
    async def test_billing_entity_scope(self, session, settings, ctx, org_workspace) -> None:
        await _ingest(
            session, settings, ctx, org_workspace, "owner", ResourceType.TRAFFIC, float(BYTES_PER_GB),
            datetime(2024, 3, 2, tzinfo=UTC),
        )
        await _ingest(
            session, settings, ctx, org_workspace, "org", ResourceType.TRAFFIC, 3.0 * BYTES_PER_GB,
            datetime(2024, 3, 25, tzinfo=UTC),
        )
        aggregator = PeriodAggregator(session, settings)
        whole = await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD)
        org_only = await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD, "org-acme")

        assert whole.traffic_total_gb == 4.0
        assert org_only.traffic_total_gb == 3.0
        assert org_only.billing_entity_id == "org-acme"
        assert org_only.aggregation_id != whole.aggregation_id

    @pytest.mark.asyncio
    async def test_entity_storage_splits_at_billing_start(self, session, settings, ctx, org_workspace) -> None:
        await StorageSnapshotRecorder(session).record_storage_snapshot(
            ctx, org_workspace, 10.0, snapshot_date=date(2024, 3, 1)
        )
        aggregator = PeriodAggregator(session, settings)
        whole = await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD)
        owner = await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD, "user-owner-1")
        org = await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD, "org-acme")
        stranger = await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD, "org-other")

        # The organization takes over on 2024-03-15: 14 owner days, 17 organization days.
        assert whole.storage_avg_gb == pytest.approx(10.0)
        assert owner.storage_avg_gb == pytest.approx(10.0 * 14 / 31)
        assert org.storage_avg_gb == pytest.approx(10.0 * 17 / 31)
        assert owner.storage_avg_gb + org.storage_avg_gb == pytest.approx(whole.storage_avg_gb)
        assert stranger.storage_avg_gb == 0.0

    @pytest.mark.asyncio
    async def test_owner_scope_without_organization_gets_all_storage(self, session, settings, ctx, workspace):
        await StorageSnapshotRecorder(session).record_storage_snapshot(
            ctx, workspace, 8.0, snapshot_date=date(2024, 3, 1)
        )
        aggregator = PeriodAggregator(session, settings)
        whole = await aggregator.calculate_aggregation(ctx, workspace, PERIOD)
        owner = await aggregator.calculate_aggregation(ctx, workspace, PERIOD, "user-owner-1")
        assert owner.storage_avg_gb == whole.storage_avg_gb == pytest.approx(8.0)

    @pytest.mark.asyncio
    async def test_invalid_period(self, session, settings, ctx, workspace) -> None:
        with pytest.raises(ValidationError):
            await PeriodAggregator(session, settings).calculate_aggregation(ctx, workspace, "2024-3")

    @pytest.mark.asyncio
    async def test_locked_after_invoice(self, session, settings, ctx, workspace) -> None:
        await _two_gib(session, settings, ctx, workspace)
        aggregator = PeriodAggregator(session, settings)
        await aggregator.calculate_aggregation(ctx, workspace, PERIOD)
        await InvoiceGenerator(session, settings).generate_invoice(ctx, workspace, PERIOD)

        with pytest.raises(PeriodLockedError):
            await aggregator.calculate_aggregation(ctx, workspace, PERIOD)

    @pytest.mark.asyncio
    async def test_invoiced_scope_locks_every_scope_of_the_period(self, session, settings, ctx, org_workspace):
        await _ingest(
            session, settings, ctx, org_workspace, "org", ResourceType.TRAFFIC, float(BYTES_PER_GB),
            datetime(2024, 3, 20, tzinfo=UTC),
        )
        aggregator = PeriodAggregator(session, settings)
        await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD)
        await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD, "org-acme")
        await InvoiceGenerator(session, settings).generate_invoice(ctx, org_workspace, PERIOD, "org-acme")

        with pytest.raises(PeriodLockedError):
            await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD)
        with pytest.raises(PeriodLockedError):
            await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD, "user-owner-1")
        assert await aggregator.get_aggregation(ctx, org_workspace, PERIOD, "user-owner-1") is None
        # Other periods stay open.
        await aggregator.calculate_aggregation(ctx, org_workspace, "2024-04")


# ---------------------------------------------------------------------------
# Optimistic concurrency
# ---------------------------------------------------------------------------


class TestVersionConflicts:
    @pytest.mark.asyncio
    async def test_lost_version_check_is_retried(self, session, settings, ctx, workspace, monkeypatch) -> None:
        aggregator = PeriodAggregator(session, settings)
        await aggregator.calculate_aggregation(ctx, workspace, PERIOD)

        original = UsageAggregationRepository.update_if_version
        attempts: list[int] = []

        async def flaky(self, aggregation_id, expected_version, values):
            attempts.append(expected_version)
            if len(attempts) == 1:
                return False
            return await original(self, aggregation_id, expected_version, values)

        monkeypatch.setattr(UsageAggregationRepository, "update_if_version", flaky)
        agg = await aggregator.calculate_aggregation(ctx, workspace, PERIOD)

        assert len(attempts) == 2
        assert agg.version == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, session, ctx, workspace, monkeypatch) -> None:
        settings = load_settings(aggregation_max_retries=3)
        aggregator = PeriodAggregator(session, settings)
        await aggregator.calculate_aggregation(ctx, workspace, PERIOD)

        attempts: list[int] = []

        async def always_lose(self, aggregation_id, expected_version, values):
            attempts.append(expected_version)
            return False

        monkeypatch.setattr(UsageAggregationRepository, "update_if_version", always_lose)
        with pytest.raises(ConcurrencyConflictError):
            await aggregator.calculate_aggregation(ctx, workspace, PERIOD)
        assert len(attempts) == 3


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestAggregationReads:
    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, session, settings, ctx, workspace) -> None:
        assert await PeriodAggregator(session, settings).get_aggregation(ctx, workspace, PERIOD) is None

    @pytest.mark.asyncio
    async def test_list_newest_first_with_bounds(self, session, settings, ctx, workspace) -> None:
        aggregator = PeriodAggregator(session, settings)
        for period in ("2024-01", "2024-02", "2024-03"):
            await aggregator.calculate_aggregation(ctx, workspace, period)

        assert [a.period for a in await aggregator.list_aggregations(ctx, workspace)] == [
            "2024-03",
            "2024-02",
            "2024-01",
        ]
        bounded = await aggregator.list_aggregations(ctx, workspace, "2024-02", "2024-02")
        assert [a.period for a in bounded] == ["2024-02"]

    @pytest.mark.asyncio
    async def test_summary_does_not_persist(self, session, settings, ctx, workspace) -> None:
        await _two_gib(session, settings, ctx, workspace)
        await _ingest(
            session, settings, ctx, workspace, "c", ResourceType.COMPUTE, 1000.0, datetime(2024, 3, 9, tzinfo=UTC),
            source=UsageSource.JOB,
        )
        aggregator = PeriodAggregator(session, settings)
        summary = await aggregator.summarize(ctx, workspace, PERIOD)

        assert summary.traffic_gb == 2.0
        assert summary.compute_units == 1000.0
        assert summary.event_count == 3
        assert summary.events_by_source == {"api": 2, "job": 1}
        assert summary.events_by_resource_type == {"compute": 1, "traffic": 2}
        assert summary.estimated_cost.traffic == Decimal("0.2000")
        assert summary.estimated_cost.compute == Decimal("1.0000")
        assert await aggregator.get_aggregation(ctx, workspace, PERIOD) is None
