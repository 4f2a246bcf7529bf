"""Event ingestion gate: the single write path into the usage ledger.

Every producer call goes through :meth:`UsageIngestionGate.record_usage_event`,
which authorizes, validates, deduplicates on the idempotency key, checks
billing suspension and the period lock, stamps the billing entity from
the event's own timestamp, applies compute weighting, and appends exactly
one ledger row.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from metering_core.config import Settings
from metering_core.context import Action, RequestContext
from metering_core.errors import BillingSuspendedError, PeriodLockedError, ValidationError
from metering_core.metering.costs import weight_for
from metering_core.metering.directory import (
    BillingStatusProvider,
    SqlBillingStatusProvider,
    SqlWorkspaceDirectory,
    WorkspaceDirectory,
)
from metering_core.metering.keys import derive_key
from metering_core.metering.periods import period_of
from metering_core.metering.resolver import BillingEntityResolver
from metering_core.models.billing import BillingAccountStatus
from metering_core.models.usage import IngestResult, ResourceType, UsageEvent, UsageEventInput
from metering_core.state.repository import UsageAggregationRepository, UsageEventRepository

logger = logging.getLogger(__name__)

_MAX_KEY_LENGTH = 512


def parse_event_input(data: UsageEventInput | Mapping[str, Any]) -> UsageEventInput:
    """Coerce raw producer input, mapping schema errors to :class:`ValidationError`."""
    if isinstance(data, UsageEventInput):
        return data
    try:
        return UsageEventInput.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid usage event: {exc.errors(include_url=False)}") from exc


def _validate(event: UsageEventInput) -> UsageEventInput:
    if not math.isfinite(event.units):
        raise ValidationError("units must be a finite number")
    if event.units < 0:
        raise ValidationError(f"units must be >= 0, got {event.units}")
    if event.idempotency_key is None and "timestamp" not in event.model_fields_set:
        # Derived keys hash the timestamp, so it must come from the producer.
        raise ValidationError("timestamp is required when idempotency_key is omitted")
    if event.timestamp.tzinfo is None:
        raise ValidationError("timestamp must be timezone-aware")
    if event.idempotency_key is not None:
        key = event.idempotency_key.strip()
        if not key:
            raise ValidationError("idempotency_key must not be blank")
        if len(key) > _MAX_KEY_LENGTH:
            raise ValidationError(f"idempotency_key longer than {_MAX_KEY_LENGTH} characters")
    return event.model_copy(update={"timestamp": event.timestamp.astimezone(UTC)})


class UsageIngestionGate:
    """Append usage events to the ledger exactly once.

    Parameters
    ----------
    session:
        Session for the caller's transaction.
    settings:
        Supplies the compute weight table.
    directory:
        Workspace/organization lookups; defaults to the SQL directory.
    billing_status:
        Suspension check; defaults to the SQL billing account table.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        directory: WorkspaceDirectory | None = None,
        billing_status: BillingStatusProvider | None = None,
    ) -> None:
        self._events = UsageEventRepository(session)
        self._aggregations = UsageAggregationRepository(session)
        self._settings = settings
        self._resolver = BillingEntityResolver(directory or SqlWorkspaceDirectory(session))
        self._billing_status = billing_status or SqlBillingStatusProvider(session)

    async def record_usage_event(
        self,
        ctx: RequestContext,
        data: UsageEventInput | Mapping[str, Any],
    ) -> IngestResult:
        """Record one event, or return the already-stored event for a repeated key.

        Raises
        ------
        ValidationError
            Malformed input.
        UnauthorizedError
            The oracle denied ``record_usage`` on the workspace.
        BillingSuspendedError
            The workspace's billing account is suspended.
        PeriodLockedError
            The event's period has already been invoiced.
        NotFoundError
            The workspace does not exist.
        """
        event = _validate(parse_event_input(data))
        await ctx.authorize(event.workspace_id, Action.RECORD_USAGE)

        idempotency_key = event.idempotency_key.strip() if event.idempotency_key else derive_key(event)

        existing = await self._events.get_by_idempotency_key(event.workspace_id, idempotency_key)
        if existing is not None:
            logger.info(
                "Duplicate usage event ignored: workspace=%s key=%s event=%s",
                event.workspace_id,
                idempotency_key,
                existing.event_id,
            )
            return IngestResult(event=UsageEvent.from_row(existing), created=False)

        status = await self._billing_status.get_status(event.workspace_id)
        if status == BillingAccountStatus.SUSPENDED:
            logger.warning("Usage rejected for suspended workspace=%s", event.workspace_id)
            raise BillingSuspendedError(event.workspace_id)

        period = period_of(event.timestamp)
        locked = await self._aggregations.find_locked(event.workspace_id, period)
        if locked is not None:
            logger.warning(
                "Usage rejected for invoiced period workspace=%s period=%s invoice=%s key=%s",
                event.workspace_id,
                period,
                locked.invoice_id,
                idempotency_key,
            )
            raise PeriodLockedError(event.workspace_id, period)

        entity = await self._resolver.resolve(ctx, event.workspace_id, event.timestamp)

        job_type = event.job_type or event.metadata.get("jobType") or event.metadata.get("job_type")
        base_units: float | None = None
        weighted_units: float | None = None
        units = float(event.units)
        if event.resource_type == ResourceType.COMPUTE:
            base_units = units
            weighted_units = base_units * weight_for(job_type, self._settings.compute_weights)
            units = weighted_units

        record = UsageEvent(
            event_id=f"evt-{uuid.uuid4().hex[:16]}",
            workspace_id=event.workspace_id,
            project_id=event.project_id,
            resource_type=event.resource_type,
            units=units,
            base_units=base_units,
            weighted_units=weighted_units,
            job_type=job_type,
            idempotency_key=idempotency_key,
            timestamp=event.timestamp,
            ingested_at=datetime.now(UTC),
            source=event.source,
            billing_entity_id=entity.entity_id,
            billing_entity_type=entity.entity_type,
            metadata=event.metadata,
        )
        inserted = await self._events.append(
            {
                "event_id": record.event_id,
                "workspace_id": record.workspace_id,
                "project_id": record.project_id,
                "resource_type": record.resource_type.value,
                "units": record.units,
                "base_units": record.base_units,
                "weighted_units": record.weighted_units,
                "job_type": record.job_type,
                "idempotency_key": record.idempotency_key,
                "timestamp": record.timestamp,
                "ingested_at": record.ingested_at,
                "source": record.source.value,
                "billing_entity_id": record.billing_entity_id,
                "billing_entity_type": record.billing_entity_type.value,
                "metadata_json": record.metadata,
            }
        )
        if not inserted:
            # A concurrent submission with the same key won the insert.
            winner = await self._events.get_by_idempotency_key(event.workspace_id, idempotency_key)
            if winner is None:
                raise RuntimeError(f"Usage event with key {idempotency_key} conflicted but cannot be read back")
            logger.info("Concurrent duplicate usage event resolved to %s", winner.event_id)
            return IngestResult(event=UsageEvent.from_row(winner), created=False)

        logger.debug(
            "Recorded usage event %s workspace=%s type=%s units=%s entity=%s:%s",
            record.event_id,
            record.workspace_id,
            record.resource_type.value,
            record.units,
            record.billing_entity_type.value,
            record.billing_entity_id,
        )
        return IngestResult(event=record, created=True)
