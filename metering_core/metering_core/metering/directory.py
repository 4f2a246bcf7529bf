"""Lookups the engine needs from the surrounding system.

The workspace directory and the billing-status provider are owned by other
services.  The engine depends only on the protocols below; the SQL
implementations read the shared state store.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from metering_core.models.billing import BillingAccountStatus, OrganizationRecord, WorkspaceRecord
from metering_core.state.repository import (
    BillingAccountRepository,
    OrganizationRepository,
    WorkspaceRepository,
)


class WorkspaceDirectory(Protocol):
    async def get_workspace(self, workspace_id: str) -> WorkspaceRecord | None: ...

    async def get_organization(self, organization_id: str) -> OrganizationRecord | None: ...


class BillingStatusProvider(Protocol):
    async def get_status(self, workspace_id: str) -> BillingAccountStatus | None:
        """Return the account status, or ``None`` if the workspace has no billing account."""
        ...


class SqlWorkspaceDirectory:
    """Directory backed by the ``workspaces`` and ``organizations`` tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._workspaces = WorkspaceRepository(session)
        self._organizations = OrganizationRepository(session)

    async def get_workspace(self, workspace_id: str) -> WorkspaceRecord | None:
        row = await self._workspaces.get(workspace_id)
        if row is None:
            return None
        return WorkspaceRecord(
            workspace_id=row.workspace_id,
            owner_user_id=row.owner_user_id,
            organization_id=row.organization_id,
        )

    async def get_organization(self, organization_id: str) -> OrganizationRecord | None:
        row = await self._organizations.get(organization_id)
        if row is None:
            return None
        return OrganizationRecord(organization_id=row.organization_id, billing_start_at=row.billing_start_at)


class SqlBillingStatusProvider:
    """Billing status backed by the ``billing_accounts`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._accounts = BillingAccountRepository(session)

    async def get_status(self, workspace_id: str) -> BillingAccountStatus | None:
        row = await self._accounts.get_by_workspace(workspace_id)
        if row is None:
            return None
        return BillingAccountStatus(row.status)
