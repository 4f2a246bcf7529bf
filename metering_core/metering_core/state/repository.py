"""Repository classes providing access to the metering state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Every conditional write (``..._if_version``, ``transition``, ``lock_for_invoice``)
is a single ``UPDATE ... WHERE`` whose row count tells the caller whether it won.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from metering_core.state.tables import (
    BillingAccountTable,
    InvoiceTable,
    OrganizationTable,
    StorageSnapshotTable,
    UsageAggregationTable,
    UsageAlertTable,
    UsageEventTable,
    WorkspaceTable,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 1000


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    The returned result's ``rowcount`` is 0 when the row already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------


class WorkspaceRepository:
    """Read and register workspaces."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, workspace_id: str) -> WorkspaceTable | None:
        result = await self._session.execute(select(WorkspaceTable).where(WorkspaceTable.workspace_id == workspace_id))
        return result.scalar_one_or_none()

    async def create(
        self,
        workspace_id: str,
        owner_user_id: str,
        organization_id: str | None = None,
        name: str | None = None,
    ) -> WorkspaceTable:
        row = WorkspaceTable(
            workspace_id=workspace_id,
            owner_user_id=owner_user_id,
            organization_id=organization_id,
            name=name,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list(self, limit: int = 100, offset: int = 0) -> list[WorkspaceTable]:
        stmt = (
            select(WorkspaceTable)
            .order_by(WorkspaceTable.workspace_id)
            .limit(min(limit, _MAX_PAGE_SIZE))
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(self, workspace_id: str, **values: Any) -> bool:
        result = await self._session.execute(
            update(WorkspaceTable).where(WorkspaceTable.workspace_id == workspace_id).values(**values)
        )
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


class OrganizationRepository:
    """Read and register organizations."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, organization_id: str) -> OrganizationTable | None:
        result = await self._session.execute(
            select(OrganizationTable).where(OrganizationTable.organization_id == organization_id)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        organization_id: str,
        billing_start_at: datetime | None = None,
        name: str | None = None,
    ) -> OrganizationTable:
        row = OrganizationTable(organization_id=organization_id, billing_start_at=billing_start_at, name=name)
        self._session.add(row)
        await self._session.flush()
        return row

    async def list(self, limit: int = 100, offset: int = 0) -> list[OrganizationTable]:
        stmt = (
            select(OrganizationTable)
            .order_by(OrganizationTable.organization_id)
            .limit(min(limit, _MAX_PAGE_SIZE))
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(self, organization_id: str, **values: Any) -> bool:
        result = await self._session.execute(
            update(OrganizationTable).where(OrganizationTable.organization_id == organization_id).values(**values)
        )
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


class BillingAccountRepository:
    """Billing account standing per workspace."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_workspace(self, workspace_id: str) -> BillingAccountTable | None:
        result = await self._session.execute(
            select(BillingAccountTable).where(BillingAccountTable.workspace_id == workspace_id)
        )
        return result.scalar_one_or_none()

    async def set_status(self, account_id: str, workspace_id: str, status: str) -> None:
        """Create the account or change its status."""
        await _dialect_upsert(
            self._session,
            BillingAccountTable,
            values={"account_id": account_id, "workspace_id": workspace_id, "status": status},
            index_elements=["workspace_id"],
            update_columns=["status"],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class UsageEventRepository:
    """Append-only access to the ``usage_events`` ledger.

    There is deliberately no update or delete method.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, event_id: str) -> UsageEventTable | None:
        result = await self._session.execute(select(UsageEventTable).where(UsageEventTable.event_id == event_id))
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, workspace_id: str, idempotency_key: str) -> UsageEventTable | None:
        stmt = (
            select(UsageEventTable)
            .where(
                UsageEventTable.workspace_id == workspace_id,
                UsageEventTable.idempotency_key == idempotency_key,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def append(self, values: dict[str, Any]) -> bool:
        """Insert one event.  Returns ``False`` if the idempotency key already exists."""
        result = await _dialect_insert_nothing(
            self._session,
            UsageEventTable,
            values=values,
            index_elements=["workspace_id", "idempotency_key"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    def _filtered(
        self,
        stmt: Any,
        workspace_id: str,
        project_id: str | None,
        resource_type: str | None,
        source: str | None,
        start: datetime | None,
        end: datetime | None,
        billing_entity_id: str | None,
    ) -> Any:
        stmt = stmt.where(UsageEventTable.workspace_id == workspace_id)
        if project_id is not None:
            stmt = stmt.where(UsageEventTable.project_id == project_id)
        if resource_type is not None:
            stmt = stmt.where(UsageEventTable.resource_type == resource_type)
        if source is not None:
            stmt = stmt.where(UsageEventTable.source == source)
        if start is not None:
            stmt = stmt.where(UsageEventTable.timestamp >= start)
        if end is not None:
            stmt = stmt.where(UsageEventTable.timestamp < end)
        if billing_entity_id is not None:
            stmt = stmt.where(UsageEventTable.billing_entity_id == billing_entity_id)
        return stmt

    async def list(
        self,
        workspace_id: str,
        *,
        project_id: str | None = None,
        resource_type: str | None = None,
        source: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        billing_entity_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[UsageEventTable], int]:
        """List events newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        filters = (workspace_id, project_id, resource_type, source, start, end, billing_entity_id)
        count_r = await self._session.execute(
            self._filtered(select(func.count()).select_from(UsageEventTable), *filters)
        )
        total = count_r.scalar_one()

        stmt = (
            self._filtered(select(UsageEventTable), *filters)
            .order_by(UsageEventTable.timestamp.desc(), UsageEventTable.event_id)
            .limit(min(limit, _MAX_PAGE_SIZE))
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def iter_all(
        self,
        workspace_id: str,
        *,
        project_id: str | None = None,
        resource_type: str | None = None,
        source: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageEventTable]:
        """Every matching event in timestamp order, for export."""
        stmt = self._filtered(
            select(UsageEventTable), workspace_id, project_id, resource_type, source, start, end, None
        ).order_by(UsageEventTable.timestamp, UsageEventTable.event_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def units_in_range(
        self,
        workspace_id: str,
        start: datetime,
        end: datetime,
        billing_entity_id: str | None = None,
    ) -> list[tuple[str, str, float]]:
        """Return ``(resource_type, source, units)`` for events in ``[start, end)``."""
        stmt = self._filtered(
            select(UsageEventTable.resource_type, UsageEventTable.source, UsageEventTable.units),
            workspace_id,
            None,
            None,
            None,
            start,
            end,
            billing_entity_id,
        )
        result = await self._session.execute(stmt)
        return [(r.resource_type, r.source, r.units) for r in result.all()]


class StorageSnapshotRepository:
    """Daily storage readings; one row per workspace, project and day."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(
        self,
        workspace_id: str,
        snapshot_date: date,
        storage_gb: float,
        project_id: str | None = None,
        recorded_at: datetime | None = None,
    ) -> None:
        """Record a reading; a later reading for the same day replaces the earlier one."""
        values: dict[str, Any] = {
            "workspace_id": workspace_id,
            "project_key": project_id or "",
            "snapshot_date": snapshot_date,
            "storage_gb": storage_gb,
        }
        if recorded_at is not None:
            values["recorded_at"] = recorded_at
        update_columns = ["storage_gb", "recorded_at"] if recorded_at is not None else ["storage_gb"]
        await _dialect_upsert(
            self._session,
            StorageSnapshotTable,
            values=values,
            index_elements=["workspace_id", "project_key", "snapshot_date"],
            update_columns=update_columns,
        )
        await self._session.flush()

    async def list_for_window(
        self,
        workspace_id: str,
        start: date,
        end: date,
    ) -> list[StorageSnapshotTable]:
        """Snapshots dated in ``[start, end)`` plus, per project, the latest one before *start*.

        The carried-in rows let the caller know each project's storage level
        on the first day of the window.
        """
        latest_before = (
            select(
                StorageSnapshotTable.project_key,
                func.max(StorageSnapshotTable.snapshot_date).label("latest"),
            )
            .where(
                StorageSnapshotTable.workspace_id == workspace_id,
                StorageSnapshotTable.snapshot_date < start,
            )
            .group_by(StorageSnapshotTable.project_key)
            .subquery()
        )
        carried = select(StorageSnapshotTable).join(
            latest_before,
            (StorageSnapshotTable.project_key == latest_before.c.project_key)
            & (StorageSnapshotTable.snapshot_date == latest_before.c.latest),
        ).where(StorageSnapshotTable.workspace_id == workspace_id)
        in_window = select(StorageSnapshotTable).where(
            StorageSnapshotTable.workspace_id == workspace_id,
            StorageSnapshotTable.snapshot_date >= start,
            StorageSnapshotTable.snapshot_date < end,
        )

        carried_rows = (await self._session.execute(carried)).scalars().all()
        window_rows = (await self._session.execute(in_window)).scalars().all()
        rows = list(carried_rows) + list(window_rows)
        rows.sort(key=lambda r: (r.snapshot_date, r.project_key))
        return rows


# ---------------------------------------------------------------------------
# Aggregations
# ---------------------------------------------------------------------------


class UsageAggregationRepository:
    """Monthly aggregations with version-checked writes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, workspace_id: str, period: str, scope_key: str) -> UsageAggregationTable | None:
        stmt = (
            select(UsageAggregationTable)
            .where(
                UsageAggregationTable.workspace_id == workspace_id,
                UsageAggregationTable.period == period,
                UsageAggregationTable.scope_key == scope_key,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, aggregation_id: str) -> UsageAggregationTable | None:
        stmt = (
            select(UsageAggregationTable)
            .where(UsageAggregationTable.aggregation_id == aggregation_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert_new(self, values: dict[str, Any]) -> bool:
        """Insert a first version.  Returns ``False`` if another writer got there first."""
        result = await _dialect_insert_nothing(
            self._session,
            UsageAggregationTable,
            values={**values, "version": 1},
            index_elements=["workspace_id", "period", "scope_key"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def update_if_version(self, aggregation_id: str, expected_version: int, values: dict[str, Any]) -> bool:
        """Overwrite totals if the row is still at *expected_version* and not finalized."""
        stmt = (
            update(UsageAggregationTable)
            .where(
                UsageAggregationTable.aggregation_id == aggregation_id,
                UsageAggregationTable.version == expected_version,
                UsageAggregationTable.is_finalized.is_(False),
            )
            .values(**values, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def lock_for_invoice(
        self,
        aggregation_id: str,
        expected_version: int,
        invoice_id: str,
        finalized_at: datetime,
    ) -> bool:
        """Attach *invoice_id* and finalize, only if no invoice is attached yet."""
        stmt = (
            update(UsageAggregationTable)
            .where(
                UsageAggregationTable.aggregation_id == aggregation_id,
                UsageAggregationTable.version == expected_version,
                UsageAggregationTable.invoice_id.is_(None),
                UsageAggregationTable.is_finalized.is_(False),
            )
            .values(
                invoice_id=invoice_id,
                is_finalized=True,
                finalized_at=finalized_at,
                updated_at=finalized_at,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list(
        self,
        workspace_id: str,
        start_period: str | None = None,
        end_period: str | None = None,
    ) -> list[UsageAggregationTable]:
        """Aggregations for a workspace, newest period first.  Period bounds are inclusive."""
        stmt = select(UsageAggregationTable).where(UsageAggregationTable.workspace_id == workspace_id)
        if start_period is not None:
            stmt = stmt.where(UsageAggregationTable.period >= start_period)
        if end_period is not None:
            stmt = stmt.where(UsageAggregationTable.period <= end_period)
        stmt = stmt.order_by(UsageAggregationTable.period.desc(), UsageAggregationTable.scope_key)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def find_locked(self, workspace_id: str, period: str) -> UsageAggregationTable | None:
        """Any invoiced or finalized aggregation of ``(workspace_id, period)``, whatever its scope."""
        stmt = (
            select(UsageAggregationTable)
            .where(
                UsageAggregationTable.workspace_id == workspace_id,
                UsageAggregationTable.period == period,
                or_(
                    UsageAggregationTable.invoice_id.is_not(None),
                    UsageAggregationTable.is_finalized.is_(True),
                ),
            )
            .order_by(UsageAggregationTable.finalized_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """CRUD operations for the ``invoices`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **values: Any) -> InvoiceTable:
        """Insert an invoice in ``draft`` status."""
        row = InvoiceTable(**values, status="draft")
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, invoice_id: str) -> InvoiceTable | None:
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.invoice_id == invoice_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_workspace(
        self,
        workspace_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[InvoiceTable], int]:
        """List invoices for a workspace, newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        count_r = await self._session.execute(
            select(func.count()).select_from(InvoiceTable).where(InvoiceTable.workspace_id == workspace_id)
        )
        total = count_r.scalar_one()

        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.workspace_id == workspace_id)
            .order_by(InvoiceTable.created_at.desc(), InvoiceTable.invoice_id)
            .limit(min(limit, _MAX_PAGE_SIZE))
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def transition(self, invoice_id: str, from_statuses: tuple[str, ...], to_status: str, **values: Any) -> bool:
        """Move to *to_status* only if the current status is one of *from_statuses*."""
        stmt = (
            update(InvoiceTable)
            .where(
                InvoiceTable.invoice_id == invoice_id,
                InvoiceTable.status.in_(from_statuses),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class UsageAlertRepository:
    """CRUD operations for the ``usage_alerts`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **values: Any) -> UsageAlertTable:
        row = UsageAlertTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, alert_id: str) -> UsageAlertTable | None:
        stmt = (
            select(UsageAlertTable)
            .where(UsageAlertTable.alert_id == alert_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_workspace(self, workspace_id: str, enabled_only: bool = False) -> list[UsageAlertTable]:
        stmt = select(UsageAlertTable).where(UsageAlertTable.workspace_id == workspace_id)
        if enabled_only:
            stmt = stmt.where(UsageAlertTable.is_enabled.is_(True))
        stmt = stmt.order_by(UsageAlertTable.created_at, UsageAlertTable.alert_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def update(self, alert_id: str, **values: Any) -> bool:
        if not values:
            return await self.get(alert_id) is not None
        stmt = (
            update(UsageAlertTable)
            .where(UsageAlertTable.alert_id == alert_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def delete(self, alert_id: str) -> bool:
        result = await self._session.execute(delete(UsageAlertTable).where(UsageAlertTable.alert_id == alert_id))
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def mark_triggered(self, alert_id: str, triggered_at: datetime, cooldown_cutoff: datetime) -> bool:
        """Stamp ``last_triggered_at`` unless the alert fired after *cooldown_cutoff*."""
        stmt = (
            update(UsageAlertTable)
            .where(
                UsageAlertTable.alert_id == alert_id,
                (UsageAlertTable.last_triggered_at.is_(None)) | (UsageAlertTable.last_triggered_at <= cooldown_cutoff),
            )
            .values(last_triggered_at=triggered_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]
