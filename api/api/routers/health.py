"""Liveness and readiness endpoints.

``/health`` lives under the versioned prefix (``/api/v1/health``) and always
answers 200.  ``/ready`` sits at the application root and answers 503 when
the database is unreachable so that orchestrators can gate traffic.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api import __version__
from api.dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _db_ok(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        return False
    return True


@router.get("/health")
async def health(session: SessionDep) -> dict[str, Any]:
    """Service liveness; ``db`` reports ``degraded`` when the database is unreachable."""
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _db_ok(session) else "degraded",
    }


readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep) -> JSONResponse:
    if not await _db_ok(session):
        return JSONResponse(status_code=503, content={"status": "not_ready", "version": __version__})
    return JSONResponse(status_code=200, content={"status": "ready", "version": __version__})
