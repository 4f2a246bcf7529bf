"""Engine and session plumbing for the metering state store.

The usage ledger, aggregations and invoices live in PostgreSQL in
production and in one SQLite file for local runs and tests.  The URL
scheme picks the backend:

  - ``postgresql+asyncpg://`` : pooled engine with per-statement and lock
    timeouts, so a stuck invoice lock cannot pin a connection forever
  - ``sqlite+aiosqlite://``   : single-connection engine from
    :mod:`metering_core.state.sqlite_adapter`
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from metering_core.config import Settings
from metering_core.state.sqlite_adapter import get_local_engine

logger = logging.getLogger(__name__)

# Session factories keyed by engine identity.  The factory keeps its
# engine alive, so an id is never reused while its entry exists.
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def sqlite_path(database_url: str) -> str | None:
    """Return the SQLite file path of *database_url*, ``":memory:"`` when it
    names none, or ``None`` for a non-SQLite URL."""
    if not database_url.startswith("sqlite"):
        return None
    _, _, path = database_url.partition("///")
    return path or ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    statement_timeout_ms: int = 30_000,
    lock_timeout_ms: int = 10_000,
) -> AsyncEngine:
    """Create an async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL or SQLite connection string.
    pool_size, max_overflow:
        PostgreSQL pool bounds; ignored for SQLite.
    statement_timeout_ms, lock_timeout_ms:
        Server-side limits applied to every PostgreSQL connection.
    """
    path = sqlite_path(database_url)
    if path is not None:
        return get_local_engine(path)

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": str(statement_timeout_ms),
                "lock_timeout": str(lock_timeout_ms),
            }
        },
    )
    logger.info("PostgreSQL engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def engine_from_settings(settings: Settings, database_url: str | None = None) -> AsyncEngine:
    """Build the engine described by *settings*; *database_url* overrides its URL."""
    return get_engine(
        database_url or settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        statement_timeout_ms=settings.database_statement_timeout_ms,
        lock_timeout_ms=settings.database_lock_timeout_ms,
    )


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the cached session factory bound to *engine*."""
    factory = _session_factories.get(id(engine))
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[id(engine)] = factory
    return factory


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on clean exit, roll back and re-raise on error.

    Repositories only flush, so everything done inside the block (an
    ingested event, an aggregation write, an invoice plus its lock) lands
    atomically.
    """
    session = get_session_factory(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
