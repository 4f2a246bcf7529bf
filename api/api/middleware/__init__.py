"""Middleware components for the metering API."""

from __future__ import annotations

from api.middleware.auth import AuthenticationMiddleware
from api.middleware.json_formatter import JSONFormatter
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rbac import (
    ACTION_PERMISSIONS,
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    role_allows,
)
from api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "ACTION_PERMISSIONS",
    "AuthenticationMiddleware",
    "JSONFormatter",
    "Permission",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "Role",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
    "get_user_role",
    "role_allows",
]
