"""Billing entity resolution.

Decides whether a usage event bills the workspace owner or the owning
organization.  The decision depends only on the event's own timestamp, so
late or out-of-order events are attributed the same way regardless of
when they are processed.
"""

from __future__ import annotations

import logging
from datetime import datetime

from metering_core.context import RequestContext
from metering_core.errors import NotFoundError
from metering_core.metering.directory import WorkspaceDirectory
from metering_core.models.billing import OrganizationRecord, WorkspaceRecord
from metering_core.models.usage import BillingEntity, BillingEntityType

logger = logging.getLogger(__name__)


def resolve_billing_entity(
    workspace: WorkspaceRecord,
    organization: OrganizationRecord | None,
    event_timestamp: datetime,
) -> BillingEntity:
    """Return the billing entity for an event at *event_timestamp*.

    * No organization: the workspace owner.
    * Organization with ``billing_start_at``: the owner strictly before it,
      the organization at or after it.
    * Organization without ``billing_start_at``: the organization.
    """
    owner = BillingEntity(entity_id=workspace.owner_user_id, entity_type=BillingEntityType.USER)
    if organization is None:
        return owner

    org = BillingEntity(entity_id=organization.organization_id, entity_type=BillingEntityType.ORGANIZATION)
    start = organization.billing_start_at
    if start is None:
        return org
    return owner if event_timestamp < start else org


class BillingEntityResolver:
    """Looks up workspace and organization, then applies :func:`resolve_billing_entity`."""

    def __init__(self, directory: WorkspaceDirectory) -> None:
        self._directory = directory

    async def load_workspace(self, ctx: RequestContext, workspace_id: str) -> WorkspaceRecord:
        """Fetch a workspace once per request.

        Raises
        ------
        NotFoundError
            If the workspace does not exist.
        """
        workspace = await ctx.memoize("workspace", workspace_id, lambda: self._directory.get_workspace(workspace_id))
        if workspace is None:
            raise NotFoundError(f"Workspace {workspace_id} not found")
        return workspace

    async def resolve(self, ctx: RequestContext, workspace_id: str, event_timestamp: datetime) -> BillingEntity:
        workspace = await self.load_workspace(ctx, workspace_id)
        if workspace.organization_id is None:
            return resolve_billing_entity(workspace, None, event_timestamp)

        org_id = workspace.organization_id
        try:
            organization = await ctx.memoize("organization", org_id, lambda: self._directory.get_organization(org_id))
        except Exception:
            logger.warning(
                "billing_entity_fallback: organization lookup failed for workspace=%s org=%s; billing owner",
                workspace_id,
                org_id,
                exc_info=True,
            )
            return resolve_billing_entity(workspace, None, event_timestamp)

        if organization is None:
            logger.warning(
                "billing_entity_fallback: organization %s of workspace %s not found; billing owner",
                org_id,
                workspace_id,
            )
        return resolve_billing_entity(workspace, organization, event_timestamp)
