"""Role-Based Access Control for metering operations.

Defines a three-tier role hierarchy (VIEWER, OPERATOR, ADMIN) plus a
non-hierarchical SERVICE role for usage producers and scheduled jobs.
Each engine :class:`~metering_core.context.Action` maps to one
:class:`Permission`; :func:`role_allows` is what the authorization oracle
consults.
"""

from __future__ import annotations

import logging
from enum import Enum, IntEnum

from fastapi import HTTPException, Request
from metering_core.context import Action

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role hierarchy (higher int = more authority)
# ---------------------------------------------------------------------------


class Role(IntEnum):
    """User roles ordered by privilege level."""

    VIEWER = 0
    OPERATOR = 1
    ADMIN = 2
    SERVICE = 10  # Non-hierarchical: producers must not inherit invoice management


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Fine-grained permission tokens."""

    READ_USAGE = "read:usage"
    WRITE_USAGE = "write:usage"
    EXPORT_USAGE = "export:usage"
    MANAGE_ALERTS = "manage:alerts"
    MANAGE_AGGREGATIONS = "manage:aggregations"
    MANAGE_INVOICES = "manage:invoices"


_VIEWER_PERMS: frozenset[Permission] = frozenset({Permission.READ_USAGE})

_OPERATOR_PERMS: frozenset[Permission] = _VIEWER_PERMS | frozenset(
    {
        Permission.WRITE_USAGE,
        Permission.EXPORT_USAGE,
        Permission.MANAGE_ALERTS,
    }
)

_ADMIN_PERMS: frozenset[Permission] = _OPERATOR_PERMS | frozenset(
    {
        Permission.MANAGE_AGGREGATIONS,
        Permission.MANAGE_INVOICES,
    }
)

_SERVICE_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.READ_USAGE,
        Permission.WRITE_USAGE,
        Permission.MANAGE_AGGREGATIONS,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.OPERATOR: _OPERATOR_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.SERVICE: _SERVICE_PERMS,
}

ACTION_PERMISSIONS: dict[Action, Permission] = {
    Action.RECORD_USAGE: Permission.WRITE_USAGE,
    Action.RECORD_STORAGE: Permission.WRITE_USAGE,
    Action.VIEW_USAGE: Permission.READ_USAGE,
    Action.EXPORT_USAGE: Permission.EXPORT_USAGE,
    Action.MANAGE_ALERTS: Permission.MANAGE_ALERTS,
    Action.CALCULATE_AGGREGATION: Permission.MANAGE_AGGREGATIONS,
    Action.GENERATE_INVOICE: Permission.MANAGE_INVOICES,
    Action.MANAGE_INVOICE: Permission.MANAGE_INVOICES,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def role_allows(role: Role, action: Action) -> bool:
    """Return ``True`` if *role* may perform the engine *action*."""
    permission = ACTION_PERMISSIONS.get(action)
    return permission is not None and role_has_permission(role, permission)


# ---------------------------------------------------------------------------
# FastAPI dependency: extract role from request.state
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> Role:
    """Extract and validate the user role from ``request.state.role``.

    Raises
    ------
    HTTPException(401)
        If the request carries no authenticated identity.
    HTTPException(403)
        If the role claim value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(
            status_code=403,
            detail=f"Unrecognised role '{raw_role}'. Valid roles: {sorted(_ROLE_LOOKUP)}",
        )
