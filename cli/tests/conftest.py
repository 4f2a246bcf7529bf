"""Shared fixtures for meterctl tests.

Each test gets its own SQLite file created through ``init-db`` and seeded
with one workspace and a few usage events through the engine.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import pytest
from cli.app import app
from metering_core.config import load_settings
from metering_core.context import system_context
from metering_core.metering import UsageIngestionGate
from metering_core.models import ResourceType, UsageEventInput
from metering_core.state.database import get_engine, get_session
from metering_core.state.repository import WorkspaceRepository
from typer.testing import CliRunner

WORKSPACE_ID = "ws-cli-000321"


async def _seed(database_url: str) -> None:
    settings = load_settings(database_url=database_url)
    engine = get_engine(database_url)
    try:
        async with get_session(engine) as session:
            await WorkspaceRepository(session).create(WORKSPACE_ID, "user-cli-owner", name="CLI")
        async with get_session(engine) as session:
            gate = UsageIngestionGate(session, settings)
            for key, rtype, units in (
                ("t1", ResourceType.TRAFFIC, 1024**3),
                ("t2", ResourceType.TRAFFIC, 1024**3),
                ("c1", ResourceType.COMPUTE, 4),
            ):
                await gate.record_usage_event(
                    system_context("seed"),
                    UsageEventInput(
                        workspace_id=WORKSPACE_ID,
                        resource_type=rtype,
                        units=units,
                        timestamp=datetime(2024, 3, 10, tzinfo=UTC),
                        idempotency_key=key,
                    ),
                )
    finally:
        await engine.dispose()


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def database_url(tmp_path: Path, runner: CliRunner) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path}/m.db"
    result = runner.invoke(app, ["--database-url", url, "init-db"])
    assert result.exit_code == 0, result.output
    asyncio.run(_seed(url))
    return url
