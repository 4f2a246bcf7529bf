"""Shared fixtures for metering engine unit tests.

Every test gets a fresh in-memory SQLite database with the full schema and
a session bound to it.  Seed helpers register workspaces and organizations
the way the surrounding platform would.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from metering_core.config import Settings, load_settings
from metering_core.context import RequestContext, system_context
from metering_core.state.database import get_session_factory
from metering_core.state.repository import OrganizationRepository, WorkspaceRepository
from metering_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

WORKSPACE_ID = "ws-alpha-000123"
OWNER_ID = "user-owner-1"
ORG_ID = "org-acme"


def at(day: int, hour: int = 12, month: int = 3, year: int = 2024) -> datetime:
    """UTC timestamp inside the test period."""
    return datetime(year, month, day, hour, tzinfo=UTC)


@pytest.fixture()
def settings() -> Settings:
    return load_settings(database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture()
def ctx() -> RequestContext:
    return system_context("test-runner")


@pytest_asyncio.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory(engine)() as session:
        yield session


@pytest_asyncio.fixture()
async def workspace(session: AsyncSession) -> str:
    """A committed workspace with no organization."""
    await WorkspaceRepository(session).create(WORKSPACE_ID, OWNER_ID, name="Alpha")
    await session.commit()
    return WORKSPACE_ID


@pytest_asyncio.fixture()
async def org_workspace(session: AsyncSession) -> str:
    """A committed workspace whose organization takes over billing on 2024-03-15."""
    await OrganizationRepository(session).create(ORG_ID, billing_start_at=at(15, hour=0), name="Acme")
    await WorkspaceRepository(session).create("ws-org-000456", OWNER_ID, organization_id=ORG_ID)
    await session.commit()
    return "ws-org-000456"
