"""Shared fixtures for metering API tests.

Provides an in-memory SQLite database wired into the app through
dependency overrides, an ``httpx.AsyncClient`` bound to the ASGI app, and
a factory for signed development tokens.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set the token secret BEFORE importing application modules so the
# module-level app and every test app share a deterministic secret.
_TEST_TOKEN_SECRET = "test-secret-key-for-metering-tests"
os.environ.setdefault("API_TOKEN_SECRET", _TEST_TOKEN_SECRET)

from api.config import APISettings
from api.dependencies import get_db_session, get_engine_settings
from api.main import create_app
from metering_core.config import Settings, load_settings
from metering_core.state.database import get_session_factory
from metering_core.state.repository import WorkspaceRepository
from metering_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

WORKSPACE_ID = "ws-api-000777"
OTHER_WORKSPACE_ID = "ws-api-000888"
OWNER_ID = "user-api-owner"

# ---------------------------------------------------------------------------
# Dev auth token
# ---------------------------------------------------------------------------


def _make_dev_token(
    tenant_id: str = WORKSPACE_ID,
    sub: str = "test-user",
    role: str | None = "admin",
    workspaces: list[str] | None = None,
    exp_offset: float = 3600,
    secret: str = _TEST_TOKEN_SECRET,
) -> str:
    """Generate a development-mode HMAC token.

    Mirrors the signing logic in :class:`api.security.TokenManager`.
    """
    now = time.time()
    payload: dict[str, Any] = {
        "sub": sub,
        "tenant_id": tenant_id,
        "iss": "metering",
        "iat": now,
        "exp": now + exp_offset,
        "scopes": ["read", "write"],
        "workspaces": workspaces or [],
        "jti": "test-jti-conftest",
        "identity_kind": "user",
        "role": role,
    }
    payload_json = json.dumps(payload)
    signature = hmac.new(
        secret.encode("utf-8"),
        payload_json.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    token_bytes = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
    return f"bmdev.{token_bytes}.{signature}"


@pytest.fixture()
def make_headers() -> Callable[..., dict[str, str]]:
    """Factory for ``Authorization`` headers; accepts :func:`_make_dev_token` kwargs."""

    def _headers(**kwargs: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {_make_dev_token(**kwargs)}"}

    return _headers


@pytest.fixture()
def admin_headers(make_headers: Callable[..., dict[str, str]]) -> dict[str, str]:
    return make_headers(role="admin")


# ---------------------------------------------------------------------------
# Database and app
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine_settings() -> Settings:
    return load_settings(database_url="sqlite+aiosqlite:///:memory:")


@pytest_asyncio.fixture()
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    async with get_session_factory(engine)() as session:
        repo = WorkspaceRepository(session)
        await repo.create(WORKSPACE_ID, OWNER_ID)
        await repo.create(OTHER_WORKSPACE_ID, OWNER_ID)
        await session.commit()
    yield engine
    await engine.dispose()


@pytest.fixture()
def app(db_engine: AsyncEngine, engine_settings: Settings):
    application = create_app(APISettings(token_secret=_TEST_TOKEN_SECRET))
    factory = get_session_factory(db_engine)

    async def _session_override() -> AsyncGenerator[AsyncSession, None]:
        session = factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_db_session] = _session_override
    application.dependency_overrides[get_engine_settings] = lambda: engine_settings
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def session_factory(db_engine: AsyncEngine):
    return get_session_factory(db_engine)
