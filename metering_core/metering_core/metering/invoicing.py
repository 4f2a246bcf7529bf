"""Invoice generation and the invoice state machine.

Generating an invoice takes the aggregation lock and creates the invoice in
one transaction:

1. compare-and-set on the aggregation (``invoice_id IS NULL``, not
   finalized, expected version) attaching the new invoice id;
2. insert the invoice row, whose ``aggregation_id`` is unique and whose
   ``(workspace_id, period)`` is unique.

A period is invoiced at most once.  Once any aggregation of the period
(workspace-wide or one billing entity) carries an invoice, every other
scope of that period is rejected as a duplicate.

If step 2 fails the whole transaction is rolled back, so an invoice never
exists without a locked aggregation and vice versa.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from metering_core.config import Settings
from metering_core.context import Action, RequestContext
from metering_core.errors import (
    ConcurrencyConflictError,
    DuplicateInvoiceError,
    InvoiceIntegrityError,
    NotFoundError,
    StateTransitionError,
)
from metering_core.metering.aggregation import scope_key_for
from metering_core.metering.costs import Rates, calculate_cost
from metering_core.metering.periods import compact, parse_period
from metering_core.models.billing import Invoice, InvoiceStatus
from metering_core.state.repository import InvoiceRepository, UsageAggregationRepository

logger = logging.getLogger(__name__)


def build_invoice_id(workspace_id: str, period: str, aggregation_id: str) -> str:
    """Human-readable, deterministic invoice id: ``INV-<WS6>-<YYYYMM>-<8 hex>``."""
    suffix = hashlib.sha256(aggregation_id.encode("utf-8")).hexdigest()[:8].upper()
    return f"INV-{workspace_id[-6:].upper()}-{compact(period)}-{suffix}"


class InvoiceGenerator:
    """Freezes aggregations into invoices and drives draft -> finalized -> paid."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._aggregations = UsageAggregationRepository(session)
        self._invoices = InvoiceRepository(session)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def generate_invoice(
        self,
        ctx: RequestContext,
        workspace_id: str,
        period: str,
        billing_entity_id: str | None = None,
    ) -> Invoice:
        """Create a draft invoice from the period's aggregation and lock the aggregation.

        Raises
        ------
        NotFoundError
            No aggregation exists for the period.
        DuplicateInvoiceError
            The period already has an invoice, from this or another scope.
        InvoiceIntegrityError
            The invoice insert failed; the transaction was rolled back.
        """
        parse_period(period)
        await ctx.authorize(workspace_id, Action.GENERATE_INVOICE)
        scope_key = scope_key_for(billing_entity_id)
        rates = Rates.from_settings(self._settings)

        for attempt in range(1, self._settings.aggregation_max_retries + 1):
            invoiced = await self._aggregations.find_locked(workspace_id, period)
            if invoiced is not None:
                logger.warning(
                    "Duplicate invoice attempt workspace=%s period=%s scope=%s existing=%s invoiced_scope=%s",
                    workspace_id,
                    period,
                    scope_key,
                    invoiced.invoice_id,
                    invoiced.scope_key,
                )
                raise DuplicateInvoiceError(workspace_id, period, invoiced.invoice_id)

            agg = await self._aggregations.get(workspace_id, period, scope_key)
            if agg is None:
                raise NotFoundError(f"No aggregation for workspace {workspace_id} period {period}")

            cost = calculate_cost(agg.traffic_total_gb, agg.storage_avg_gb, agg.compute_total_units, rates)
            invoice_id = build_invoice_id(workspace_id, period, agg.aggregation_id)
            now = self._clock()

            locked = await self._aggregations.lock_for_invoice(agg.aggregation_id, agg.version, invoice_id, now)
            if not locked:
                # Either another generator won, or a recompute bumped the version.
                logger.info(
                    "Invoice lock conflict workspace=%s period=%s attempt=%d",
                    workspace_id,
                    period,
                    attempt,
                )
                continue

            try:
                row = await self._invoices.create(
                    invoice_id=invoice_id,
                    workspace_id=workspace_id,
                    period=period,
                    billing_entity_id=agg.billing_entity_id,
                    aggregation_id=agg.aggregation_id,
                    traffic_gb=agg.traffic_total_gb,
                    storage_avg_gb=agg.storage_avg_gb,
                    compute_units=agg.compute_total_units,
                    traffic_cost=cost.traffic,
                    storage_cost=cost.storage,
                    compute_cost=cost.compute,
                    total_cost=cost.total,
                    created_at=now,
                )
            except SQLAlchemyError as exc:
                logger.error(
                    "Invoice insert failed after aggregation lock; rolling back workspace=%s period=%s",
                    workspace_id,
                    period,
                    exc_info=True,
                )
                await self._session.rollback()
                # A concurrent generator for another scope of the period won the unique period slot.
                winner = await self._aggregations.find_locked(workspace_id, period)
                if winner is not None:
                    raise DuplicateInvoiceError(workspace_id, period, winner.invoice_id) from exc
                raise InvoiceIntegrityError(
                    f"Invoice creation for workspace {workspace_id} period {period} failed and was rolled back"
                ) from exc

            logger.info(
                "Generated invoice %s workspace=%s period=%s total=%s",
                invoice_id,
                workspace_id,
                period,
                cost.total,
            )
            return Invoice.from_row(row)

        raise ConcurrencyConflictError(
            f"Invoice generation for workspace {workspace_id} period {period} kept conflicting"
        )

    async def _load(self, invoice_id: str) -> Invoice:
        row = await self._invoices.get(invoice_id)
        if row is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return Invoice.from_row(row)

    async def get_invoice(self, ctx: RequestContext, invoice_id: str) -> Invoice:
        invoice = await self._load(invoice_id)
        await ctx.authorize(invoice.workspace_id, Action.VIEW_USAGE)
        return invoice

    async def list_invoices(
        self,
        ctx: RequestContext,
        workspace_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        await ctx.authorize(workspace_id, Action.VIEW_USAGE)
        rows, total = await self._invoices.list_for_workspace(workspace_id, limit=limit, offset=offset)
        return [Invoice.from_row(r) for r in rows], total

    async def _transition(
        self,
        ctx: RequestContext,
        invoice_id: str,
        allowed_from: tuple[InvoiceStatus, ...],
        target: InvoiceStatus,
        **values: object,
    ) -> Invoice:
        invoice = await self._load(invoice_id)
        await ctx.authorize(invoice.workspace_id, Action.MANAGE_INVOICE)
        if invoice.status not in allowed_from:
            raise StateTransitionError(invoice_id, invoice.status.value, target.value)

        moved = await self._invoices.transition(
            invoice_id,
            tuple(s.value for s in allowed_from),
            target.value,
            **values,
        )
        if not moved:
            current = await self._load(invoice_id)
            raise StateTransitionError(invoice_id, current.status.value, target.value)

        logger.info("Invoice %s: %s -> %s", invoice_id, invoice.status.value, target.value)
        return await self._load(invoice_id)

    async def finalize_invoice(self, ctx: RequestContext, invoice_id: str) -> Invoice:
        """``draft -> finalized``.  Any other starting status is rejected."""
        return await self._transition(
            ctx,
            invoice_id,
            (InvoiceStatus.DRAFT,),
            InvoiceStatus.FINALIZED,
            finalized_at=self._clock(),
        )

    async def pay_invoice(self, ctx: RequestContext, invoice_id: str) -> Invoice:
        """``finalized -> paid``; also from ``draft`` when ``allow_pay_from_draft`` is set."""
        allowed = (InvoiceStatus.FINALIZED,)
        if self._settings.allow_pay_from_draft:
            allowed = (InvoiceStatus.DRAFT, InvoiceStatus.FINALIZED)
        return await self._transition(ctx, invoice_id, allowed, InvoiceStatus.PAID, paid_at=self._clock())
