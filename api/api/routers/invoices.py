"""Invoice generation, retrieval and status transitions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query
from metering_core.models import Invoice

from api.dependencies import ContextDep, InvoiceGeneratorDep
from api.schemas import InvoicePage, PeriodRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage/invoices", tags=["invoices"])


@router.get("", response_model=InvoicePage)
async def list_invoices(
    ctx: ContextDep,
    generator: InvoiceGeneratorDep,
    workspace_id: str = Query(min_length=1),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> InvoicePage:
    """Return a workspace's invoices, newest first."""
    items, total = await generator.list_invoices(ctx, workspace_id, limit=limit, offset=offset)
    return InvoicePage(items=items, total=total, limit=limit, offset=offset)


@router.post("/generate", response_model=Invoice, status_code=201)
async def generate_invoice(
    body: PeriodRequest,
    ctx: ContextDep,
    generator: InvoiceGeneratorDep,
) -> Invoice:
    """Freeze the period's aggregation into a draft invoice.

    404 when the period has not been aggregated; 409 when it has already
    been invoiced.
    """
    invoice = await generator.generate_invoice(ctx, body.workspace_id, body.period, body.billing_entity_id)
    logger.info("Invoice %s generated by %s", invoice.invoice_id, ctx.principal)
    return invoice


@router.get("/{invoice_id}", response_model=Invoice)
async def get_invoice(invoice_id: str, ctx: ContextDep, generator: InvoiceGeneratorDep) -> Invoice:
    return await generator.get_invoice(ctx, invoice_id)


@router.patch("/{invoice_id}/finalize", response_model=Invoice)
async def finalize_invoice(invoice_id: str, ctx: ContextDep, generator: InvoiceGeneratorDep) -> Invoice:
    """Move a draft invoice to finalized."""
    return await generator.finalize_invoice(ctx, invoice_id)


@router.patch("/{invoice_id}/pay", response_model=Invoice)
async def pay_invoice(invoice_id: str, ctx: ContextDep, generator: InvoiceGeneratorDep) -> Invoice:
    """Mark a finalized invoice as paid."""
    return await generator.pay_invoice(ctx, invoice_id)
