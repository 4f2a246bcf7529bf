"""SQLite backend for local runs and tests.

Uses the same ORM tables as PostgreSQL.  Differences that matter to the
metering engine:

* One writer at a time.  A ``busy_timeout`` makes concurrent aggregation
  or invoice writers wait for the lock instead of failing immediately;
  compare-and-set updates still detect lost races.
* ``ON CONFLICT`` inserts (ledger idempotency, aggregation creation) use
  the SQLite dialect, selected in the repositories.
* Tables come from :func:`create_local_tables` rather than Alembic.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from metering_core.state.tables import Base

logger = logging.getLogger(__name__)

MEMORY = ":memory:"
_BUSY_TIMEOUT_MS = 5000


def get_local_engine(db_path: Path | str = ".metering/state.db") -> AsyncEngine:
    """Create an aiosqlite engine for *db_path*.

    ``":memory:"`` gives an ephemeral database shared by every session of
    the returned engine (a single pooled connection); any other value is
    a file whose parent directories are created on demand.
    """
    in_memory = str(db_path) == MEMORY
    if in_memory:
        url = f"sqlite+aiosqlite:///{MEMORY}"
        engine = create_async_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"
        engine = create_async_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
        cursor.close()

    logger.debug("SQLite engine ready: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create every metering table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ensured %d metering tables", len(Base.metadata.tables))
