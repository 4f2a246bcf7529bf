"""Unit tests for invoice generation and the invoice state machine."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from metering_core.config import load_settings
from metering_core.errors import (
    ConcurrencyConflictError,
    DuplicateInvoiceError,
    InvoiceIntegrityError,
    NotFoundError,
    StateTransitionError,
)
from metering_core.metering.aggregation import BYTES_PER_GB, PeriodAggregator
from metering_core.metering.costs import Rates, calculate_cost
from metering_core.metering.ingestion import UsageIngestionGate
from metering_core.metering.invoicing import InvoiceGenerator, build_invoice_id
from metering_core.models import InvoiceStatus, ResourceType, UsageEventInput
from metering_core.state.repository import InvoiceRepository, UsageAggregationRepository
from sqlalchemy.exc import IntegrityError

PERIOD = "2024-03"
_FIXED_NOW = datetime(2024, 4, 2, 9, 0, tzinfo=UTC)


async def _aggregate(session, settings, ctx, workspace_id: str):
    gate = UsageIngestionGate(session, settings)
    await gate.record_usage_event(
        ctx,
        UsageEventInput(
            workspace_id=workspace_id,
            resource_type=ResourceType.TRAFFIC,
            units=2.0 * BYTES_PER_GB,
            timestamp=datetime(2024, 3, 4, tzinfo=UTC),
            idempotency_key="traffic-1",
        ),
    )
    await gate.record_usage_event(
        ctx,
        UsageEventInput(
            workspace_id=workspace_id,
            resource_type=ResourceType.COMPUTE,
            units=1500.0,
            timestamp=datetime(2024, 3, 5, tzinfo=UTC),
            idempotency_key="compute-1",
        ),
    )
    return await PeriodAggregator(session, settings).calculate_aggregation(ctx, workspace_id, PERIOD)


class TestBuildInvoiceId:
    def test_format(self) -> None:
        invoice_id = build_invoice_id("ws-alpha-000123", PERIOD, "agg-1")
        assert re.fullmatch(r"INV-000123-202403-[0-9A-F]{8}", invoice_id)

    def test_deterministic_per_aggregation(self) -> None:
        assert build_invoice_id("ws", PERIOD, "agg-1") == build_invoice_id("ws", PERIOD, "agg-1")
        assert build_invoice_id("ws", PERIOD, "agg-1") != build_invoice_id("ws", PERIOD, "agg-2")

    def test_short_workspace_id(self) -> None:
        assert build_invoice_id("abc", PERIOD, "a").startswith("INV-ABC-202403-")


# ---------------------------------------------------------------------------
# generate_invoice
# ---------------------------------------------------------------------------


class TestGenerateInvoice:
    @pytest.mark.asyncio
    async def test_generates_draft_from_aggregation(self, session, settings, ctx, workspace) -> None:
        agg = await _aggregate(session, settings, ctx, workspace)
        invoice = await InvoiceGenerator(session, settings, clock=lambda: _FIXED_NOW).generate_invoice(
            ctx, workspace, PERIOD
        )

        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.aggregation_snapshot_id == agg.aggregation_id
        assert invoice.invoice_id == build_invoice_id(workspace, PERIOD, agg.aggregation_id)
        assert invoice.traffic_gb == 2.0
        assert invoice.compute_units == 1500.0
        assert invoice.traffic_cost == Decimal("0.2000")
        assert invoice.compute_cost == Decimal("1.5000")
        assert invoice.total_cost == Decimal("1.7000")

    @pytest.mark.asyncio
    async def test_cost_rederivable_from_quantities(self, session, settings, ctx, workspace) -> None:
        await _aggregate(session, settings, ctx, workspace)
        invoice = await InvoiceGenerator(session, settings).generate_invoice(ctx, workspace, PERIOD)
        again = calculate_cost(invoice.traffic_gb, invoice.storage_avg_gb, invoice.compute_units, Rates())
        assert again.total == invoice.total_cost

    @pytest.mark.asyncio
    async def test_locks_aggregation(self, session, settings, ctx, workspace) -> None:
        await _aggregate(session, settings, ctx, workspace)
        invoice = await InvoiceGenerator(session, settings, clock=lambda: _FIXED_NOW).generate_invoice(
            ctx, workspace, PERIOD
        )
        agg = await PeriodAggregator(session, settings).get_aggregation(ctx, workspace, PERIOD)

        assert agg is not None
        assert agg.is_finalized is True
        assert agg.invoice_id == invoice.invoice_id
        assert agg.finalized_at == _FIXED_NOW

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, session, settings, ctx, workspace) -> None:
        await _aggregate(session, settings, ctx, workspace)
        generator = InvoiceGenerator(session, settings)
        first = await generator.generate_invoice(ctx, workspace, PERIOD)

        with pytest.raises(DuplicateInvoiceError) as exc_info:
            await generator.generate_invoice(ctx, workspace, PERIOD)
        assert exc_info.value.invoice_id == first.invoice_id

    @pytest.mark.asyncio
    async def test_other_scope_of_invoiced_period_rejected(self, session, settings, ctx, org_workspace) -> None:
        aggregator = PeriodAggregator(session, settings)
        await _aggregate(session, settings, ctx, org_workspace)
        await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD, "user-owner-1")
        generator = InvoiceGenerator(session, settings)
        first = await generator.generate_invoice(ctx, org_workspace, PERIOD)

        with pytest.raises(DuplicateInvoiceError) as exc_info:
            await generator.generate_invoice(ctx, org_workspace, PERIOD, "user-owner-1")
        assert exc_info.value.invoice_id == first.invoice_id

        _, total = await InvoiceRepository(session).list_for_workspace(org_workspace)
        assert total == 1
        owner_scope = await aggregator.get_aggregation(ctx, org_workspace, PERIOD, "user-owner-1")
        assert owner_scope is not None
        assert owner_scope.invoice_id is None

    @pytest.mark.asyncio
    async def test_period_slot_taken_concurrently_is_duplicate(
        self, session, settings, ctx, org_workspace, monkeypatch
    ) -> None:
        aggregator = PeriodAggregator(session, settings)
        await _aggregate(session, settings, ctx, org_workspace)
        await aggregator.calculate_aggregation(ctx, org_workspace, PERIOD, "user-owner-1")
        first = await InvoiceGenerator(session, settings).generate_invoice(ctx, org_workspace, PERIOD)
        await session.commit()

        # The pre-check misses the committed invoice once, as it would for a concurrent writer.
        original = UsageAggregationRepository.find_locked
        calls: list[str] = []

        async def stale_once(self, workspace_id, period):
            calls.append(period)
            if len(calls) == 1:
                return None
            return await original(self, workspace_id, period)

        monkeypatch.setattr(UsageAggregationRepository, "find_locked", stale_once)
        with pytest.raises(DuplicateInvoiceError) as exc_info:
            await InvoiceGenerator(session, settings).generate_invoice(ctx, org_workspace, PERIOD, "user-owner-1")
        assert exc_info.value.invoice_id == first.invoice_id

        owner_scope = await aggregator.get_aggregation(ctx, org_workspace, PERIOD, "user-owner-1")
        assert owner_scope is not None
        assert owner_scope.is_finalized is False

    @pytest.mark.asyncio
    async def test_requires_aggregation(self, session, settings, ctx, workspace) -> None:
        with pytest.raises(NotFoundError):
            await InvoiceGenerator(session, settings).generate_invoice(ctx, workspace, PERIOD)

    @pytest.mark.asyncio
    async def test_failed_insert_rolls_back_lock(self, session, settings, ctx, workspace, monkeypatch) -> None:
        await _aggregate(session, settings, ctx, workspace)
        await session.commit()

        async def broken_create(self, **values):
            raise IntegrityError("INSERT INTO invoices", {}, Exception("disk full"))

        monkeypatch.setattr(InvoiceRepository, "create", broken_create)
        with pytest.raises(InvoiceIntegrityError):
            await InvoiceGenerator(session, settings).generate_invoice(ctx, workspace, PERIOD)

        agg = await PeriodAggregator(session, settings).get_aggregation(ctx, workspace, PERIOD)
        assert agg is not None
        assert agg.is_finalized is False
        assert agg.invoice_id is None

        monkeypatch.undo()
        invoice = await InvoiceGenerator(session, settings).generate_invoice(ctx, workspace, PERIOD)
        assert invoice.status == InvoiceStatus.DRAFT

    @pytest.mark.asyncio
    async def test_lock_conflicts_exhaust_retries(self, session, ctx, workspace, monkeypatch) -> None:
        settings = load_settings(aggregation_max_retries=2)
        await _aggregate(session, settings, ctx, workspace)

        async def never_lock(self, aggregation_id, expected_version, invoice_id, finalized_at):
            return False

        monkeypatch.setattr(UsageAggregationRepository, "lock_for_invoice", never_lock)
        with pytest.raises(ConcurrencyConflictError):
            await InvoiceGenerator(session, settings).generate_invoice(ctx, workspace, PERIOD)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestInvoiceLifecycle:
    @pytest.mark.asyncio
    async def test_draft_finalized_paid(self, session, settings, ctx, workspace) -> None:
        await _aggregate(session, settings, ctx, workspace)
        generator = InvoiceGenerator(session, settings, clock=lambda: _FIXED_NOW)
        draft = await generator.generate_invoice(ctx, workspace, PERIOD)

        finalized = await generator.finalize_invoice(ctx, draft.invoice_id)
        assert finalized.status == InvoiceStatus.FINALIZED
        assert finalized.finalized_at == _FIXED_NOW

        paid = await generator.pay_invoice(ctx, draft.invoice_id)
        assert paid.status == InvoiceStatus.PAID
        assert paid.paid_at == _FIXED_NOW

    @pytest.mark.asyncio
    async def test_finalize_twice_rejected(self, session, settings, ctx, workspace) -> None:
        await _aggregate(session, settings, ctx, workspace)
        generator = InvoiceGenerator(session, settings)
        draft = await generator.generate_invoice(ctx, workspace, PERIOD)
        await generator.finalize_invoice(ctx, draft.invoice_id)

        with pytest.raises(StateTransitionError) as exc_info:
            await generator.finalize_invoice(ctx, draft.invoice_id)
        assert exc_info.value.current == "finalized"

    @pytest.mark.asyncio
    async def test_pay_from_draft_rejected_by_default(self, session, settings, ctx, workspace) -> None:
        await _aggregate(session, settings, ctx, workspace)
        generator = InvoiceGenerator(session, settings)
        draft = await generator.generate_invoice(ctx, workspace, PERIOD)

        with pytest.raises(StateTransitionError):
            await generator.pay_invoice(ctx, draft.invoice_id)

    @pytest.mark.asyncio
    async def test_pay_from_draft_when_enabled(self, session, ctx, workspace) -> None:
        settings = load_settings(allow_pay_from_draft=True)
        await _aggregate(session, settings, ctx, workspace)
        generator = InvoiceGenerator(session, settings)
        draft = await generator.generate_invoice(ctx, workspace, PERIOD)

        paid = await generator.pay_invoice(ctx, draft.invoice_id)
        assert paid.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_paid_is_terminal(self, session, settings, ctx, workspace) -> None:
        await _aggregate(session, settings, ctx, workspace)
        generator = InvoiceGenerator(session, settings)
        draft = await generator.generate_invoice(ctx, workspace, PERIOD)
        await generator.finalize_invoice(ctx, draft.invoice_id)
        await generator.pay_invoice(ctx, draft.invoice_id)

        with pytest.raises(StateTransitionError):
            await generator.pay_invoice(ctx, draft.invoice_id)
        with pytest.raises(StateTransitionError):
            await generator.finalize_invoice(ctx, draft.invoice_id)

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, session, settings, ctx) -> None:
        with pytest.raises(NotFoundError):
            await InvoiceGenerator(session, settings).finalize_invoice(ctx, "INV-NOPE")


class TestInvoiceReads:
    @pytest.mark.asyncio
    async def test_get_and_list(self, session, settings, ctx, workspace) -> None:
        await _aggregate(session, settings, ctx, workspace)
        generator = InvoiceGenerator(session, settings)
        created = await generator.generate_invoice(ctx, workspace, PERIOD)

        fetched = await generator.get_invoice(ctx, created.invoice_id)
        assert fetched.invoice_id == created.invoice_id

        items, total = await generator.list_invoices(ctx, workspace)
        assert total == 1
        assert [i.invoice_id for i in items] == [created.invoice_id]

    @pytest.mark.asyncio
    async def test_list_empty_workspace(self, session, settings, ctx) -> None:
        items, total = await InvoiceGenerator(session, settings).list_invoices(ctx, "ws-empty")
        assert items == []
        assert total == 0
