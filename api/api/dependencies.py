"""FastAPI dependency injection for sessions, settings, request context and services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from metering_core.config import Settings, load_settings
from metering_core.context import RequestContext
from metering_core.metering import (
    AlertEvaluator,
    AlertNotifier,
    InvoiceGenerator,
    PeriodAggregator,
    StorageSnapshotRecorder,
    UsageExporter,
    UsageIngestionGate,
)
from metering_core.state.database import engine_from_settings, get_session_factory
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.middleware.rbac import Role, get_user_role
from api.services.alert_webhooks import WebhookAlertNotifier
from api.services.authorization import TokenScopeOracle

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_engine_settings_cache: Settings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_engine_settings() -> Settings:
    """Return the cached engine :class:`Settings` (``METERING_*``)."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_settings()
    return _engine_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
EngineSettingsDep = Annotated[Settings, Depends(get_engine_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings, engine_settings: Settings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = engine_from_settings(engine_settings, settings.database_url)
    _session_factory = get_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    session = _session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Identity and request context (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------

RoleDep = Annotated[Role, Depends(get_user_role)]


def get_request_context(request: Request, role: RoleDep) -> RequestContext:
    """Build a fresh :class:`RequestContext` for this request.

    Authorization results and directory lookups memoized on it are
    discarded with the request.
    """
    principal = getattr(request.state, "sub", None)
    if principal is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    workspaces = getattr(request.state, "workspaces", frozenset())
    return RequestContext(principal=principal, oracle=TokenScopeOracle(role, workspaces))


ContextDep = Annotated[RequestContext, Depends(get_request_context)]

# ---------------------------------------------------------------------------
# Alert notifier
# ---------------------------------------------------------------------------

_alert_notifier: WebhookAlertNotifier | None = None


def init_alert_notifier(settings: APISettings) -> WebhookAlertNotifier:
    """Create and cache the global webhook notifier."""
    global _alert_notifier  # noqa: PLW0603
    _alert_notifier = WebhookAlertNotifier(secret=settings.alert_webhook_secret.get_secret_value())
    return _alert_notifier


async def dispose_alert_notifier() -> None:
    global _alert_notifier  # noqa: PLW0603
    if _alert_notifier is not None:
        await _alert_notifier.close()
        _alert_notifier = None


def get_alert_notifier() -> AlertNotifier | None:
    """Return the webhook notifier, or ``None`` (log-only) before startup."""
    return _alert_notifier


# ---------------------------------------------------------------------------
# Engine services (one instance per request, bound to the request session)
# ---------------------------------------------------------------------------


def get_ingestion_gate(session: SessionDep, settings: EngineSettingsDep) -> UsageIngestionGate:
    return UsageIngestionGate(session, settings)


def get_aggregator(session: SessionDep, settings: EngineSettingsDep) -> PeriodAggregator:
    return PeriodAggregator(session, settings)


def get_invoice_generator(session: SessionDep, settings: EngineSettingsDep) -> InvoiceGenerator:
    return InvoiceGenerator(session, settings)


def get_alert_evaluator(
    session: SessionDep,
    settings: EngineSettingsDep,
    notifier: Annotated[AlertNotifier | None, Depends(get_alert_notifier)],
) -> AlertEvaluator:
    return AlertEvaluator(session, settings, notifier=notifier)


def get_storage_recorder(session: SessionDep) -> StorageSnapshotRecorder:
    return StorageSnapshotRecorder(session)


def get_exporter(session: SessionDep) -> UsageExporter:
    return UsageExporter(session)


IngestionDep = Annotated[UsageIngestionGate, Depends(get_ingestion_gate)]
AggregatorDep = Annotated[PeriodAggregator, Depends(get_aggregator)]
InvoiceGeneratorDep = Annotated[InvoiceGenerator, Depends(get_invoice_generator)]
AlertEvaluatorDep = Annotated[AlertEvaluator, Depends(get_alert_evaluator)]
StorageRecorderDep = Annotated[StorageSnapshotRecorder, Depends(get_storage_recorder)]
ExporterDep = Annotated[UsageExporter, Depends(get_exporter)]
