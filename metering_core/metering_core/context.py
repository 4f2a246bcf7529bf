"""Request-scoped context passed explicitly through every engine operation.

A :class:`RequestContext` is created for one inbound request (or one CLI
invocation) and discarded afterwards.  Authorization decisions and
directory lookups memoized on it can therefore never leak between
principals or tenants.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar

from metering_core.errors import UnauthorizedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Action(str, Enum):
    """Operations the authorization oracle is asked about."""

    RECORD_USAGE = "record_usage"
    VIEW_USAGE = "view_usage"
    CALCULATE_AGGREGATION = "calculate_aggregation"
    RECORD_STORAGE = "record_storage"
    GENERATE_INVOICE = "generate_invoice"
    MANAGE_INVOICE = "manage_invoice"
    MANAGE_ALERTS = "manage_alerts"
    EXPORT_USAGE = "export_usage"


class AuthorizationOracle(Protocol):
    """Opaque yes/no permission check supplied by the host application."""

    async def is_authorized(self, principal: str, workspace_id: str, action: Action) -> bool: ...


class AllowAllOracle:
    """Oracle for trusted internal drivers (scheduled CLI jobs, tests)."""

    async def is_authorized(self, principal: str, workspace_id: str, action: Action) -> bool:
        return True


@dataclass
class RequestContext:
    """Per-request principal, oracle and memo tables.

    Parameters
    ----------
    principal:
        Identity of the caller, passed to the oracle.
    oracle:
        Authorization oracle consulted before mutating or reading state.
    """

    principal: str
    oracle: AuthorizationOracle = field(default_factory=AllowAllOracle)
    _authz: dict[tuple[str, Action], bool] = field(default_factory=dict, repr=False)
    _memo: dict[tuple[str, str], Any] = field(default_factory=dict, repr=False)

    async def authorize(self, workspace_id: str, action: Action) -> None:
        """Raise :class:`UnauthorizedError` unless the oracle allows *action*."""
        key = (workspace_id, action)
        allowed = self._authz.get(key)
        if allowed is None:
            allowed = await self.oracle.is_authorized(self.principal, workspace_id, action)
            self._authz[key] = allowed
        if not allowed:
            logger.info(
                "Authorization denied: principal=%s workspace=%s action=%s",
                self.principal,
                workspace_id,
                action.value,
            )
            raise UnauthorizedError(f"{self.principal} may not {action.value} on workspace {workspace_id}")

    async def memoize(self, namespace: str, key: str, loader: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value for ``(namespace, key)``, loading it once per request."""
        memo_key = (namespace, key)
        if memo_key not in self._memo:
            self._memo[memo_key] = await loader()
        return self._memo[memo_key]

    def clear(self) -> None:
        """Drop every memoized entry."""
        self._authz.clear()
        self._memo.clear()


def system_context(principal: str = "system") -> RequestContext:
    """Context for trusted internal callers."""
    return RequestContext(principal=principal, oracle=AllowAllOracle())
