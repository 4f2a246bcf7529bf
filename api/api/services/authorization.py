"""Token-backed authorization oracle for engine operations."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from metering_core.context import Action

from api.middleware.rbac import Role, role_allows

logger = logging.getLogger(__name__)

ALL_WORKSPACES = "*"


class TokenScopeOracle:
    """Allows an action when the role grants it and the workspace is in scope.

    Parameters
    ----------
    role:
        Role from the bearer token.
    workspaces:
        Workspace ids the token covers; ``"*"`` covers every workspace.
    """

    def __init__(self, role: Role, workspaces: Iterable[str]) -> None:
        self._role = role
        self._workspaces = frozenset(workspaces)

    def covers(self, workspace_id: str) -> bool:
        return ALL_WORKSPACES in self._workspaces or workspace_id in self._workspaces

    async def is_authorized(self, principal: str, workspace_id: str, action: Action) -> bool:
        if not self.covers(workspace_id):
            logger.debug("Workspace %s outside token scope of %s", workspace_id, principal)
            return False
        return role_allows(self._role, action)
