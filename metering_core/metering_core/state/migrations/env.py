"""Alembic environment for the metering state store.

Supports both **online** (connected) and **offline** (SQL-generation) modes.
``target_metadata`` is the shared ``Base.metadata`` from
``metering_core.state.tables`` so that ``--autogenerate`` detects drift
against the ORM definitions.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from metering_core.config import load_settings
from metering_core.state.tables import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

# Async drivers used by the application, mapped to the sync drivers Alembic needs.
_SYNC_DRIVERS: dict[str, str] = {
    "postgresql+asyncpg://": "postgresql+psycopg://",
    "postgresql://": "postgresql+psycopg://",
    "sqlite+aiosqlite://": "sqlite://",
}


def _get_database_url() -> str:
    """Resolve the migration URL.

    Priority:
    1. ``ALEMBIC_DATABASE_URL`` environment variable.
    2. ``sqlalchemy.url`` in ``alembic.ini``.
    3. ``METERING_DATABASE_URL`` via the engine settings.

    Async driver prefixes are rewritten to their synchronous counterparts.
    """
    url = os.environ.get("ALEMBIC_DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        url = load_settings().database_url
        logger.info("Using engine settings database URL: %s", url[:40] + "...")

    for async_prefix, sync_prefix in _SYNC_DRIVERS.items():
        if url.startswith(async_prefix):
            url = sync_prefix + url[len(async_prefix) :]
            break
    # asyncpg spells the SSL flag differently from libpq.
    return url.replace("?ssl=require", "?sslmode=require").replace("&ssl=require", "&sslmode=require")


def run_migrations_offline() -> None:
    """Emit migration SQL to the script output without a database connection."""
    context.configure(
        url=_get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a synchronous connection."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = _get_database_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
