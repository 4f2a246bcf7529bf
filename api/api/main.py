"""FastAPI application entry-point for the metering API."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from metering_core.errors import (
    BillingSuspendedError,
    ConcurrencyConflictError,
    DuplicateInvoiceError,
    InvoiceIntegrityError,
    MeteringError,
    NotFoundError,
    PeriodLockedError,
    StateTransitionError,
    UnauthorizedError,
    ValidationError,
)
from metering_core.state.sqlite_adapter import create_local_tables
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api import __version__
from api.config import APISettings, load_api_settings
from api.dependencies import (
    dispose_alert_notifier,
    dispose_engine,
    get_engine_settings,
    init_alert_notifier,
    init_engine,
)
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.json_formatter import JSONFormatter
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter
from api.routers import alerts, health, invoices, usage
from api.security import TokenManager

logger = logging.getLogger(__name__)

# Most specific class first; lookup walks the exception's MRO.
_ERROR_STATUS: dict[type[MeteringError], int] = {
    ValidationError: 400,
    UnauthorizedError: 403,
    BillingSuspendedError: 403,
    NotFoundError: 404,
    PeriodLockedError: 409,
    DuplicateInvoiceError: 409,
    StateTransitionError: 409,
    ConcurrencyConflictError: 409,
    InvoiceIntegrityError: 500,
}

_HTTP_CODES: dict[int, str] = {
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def status_for(exc: MeteringError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 500


def _configure_structured_logging() -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup the database engine and the alert notifier are created.
    Local SQLite databases get their tables created in place; PostgreSQL
    deployments are expected to run the Alembic migrations.
    """
    settings: APISettings = load_api_settings()
    engine_settings = get_engine_settings()

    if settings.structured_logging or engine_settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings, engine_settings)
    is_local = engine.dialect.name == "sqlite"
    logger.info("Database engine initialised (%s)", "local SQLite" if is_local else "postgres")

    if is_local:
        await create_local_tables(engine)

    init_alert_notifier(settings)

    yield

    await dispose_alert_notifier()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _token_manager(settings: APISettings) -> TokenManager:
    secret = settings.token_secret.get_secret_value()
    if not secret:
        secret = f"dev-{secrets.token_hex(32)}"
        logger.warning(
            "API_TOKEN_SECRET not set; generated a random per-process secret. "
            "Tokens will not survive process restarts."
        )
    return TokenManager(secret, ttl_seconds=settings.token_ttl_seconds)


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Metering API",
        description="Usage ingestion, monthly aggregation and invoicing.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (last added runs first) ----------------------------------

    app.add_middleware(AuthenticationMiddleware, token_manager=_token_manager(settings))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(TraceContextMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")
    app.include_router(alerts.router, prefix="/api/v1")
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(MeteringError)
    async def metering_error_handler(request: Request, exc: MeteringError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message, exc_info=exc)
        else:
            logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid')}" for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"detail": problems or "Invalid request", "code": ValidationError.code},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "code": _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error", "code": "DATABASE_ERROR"},
        )

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
