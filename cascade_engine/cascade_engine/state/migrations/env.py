"""Alembic environment configuration for cadenza state store migrations.

Supports both **online** (connected) and **offline** (SQL-generation) modes.
The database URL is resolved from the ``sqlalchemy.url`` config
option, then the ``ALEMBIC_DATABASE_URL`` and ``CASCADE_DATABASE_URL``
environment variables.

Online migrations run through the same async drivers the engine uses
(asyncpg, aiosqlite), so no synchronous driver is required.
"""

from __future__ import annotations

import asyncio
import logging
import os
from logging.config import fileConfig

from alembic import context
from cascade_engine.state.tables import Base
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

_DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///.cadenza/state.db"


def _get_database_url() -> str:
    url = (
        config.get_main_option("sqlalchemy.url")
        or os.environ.get("ALEMBIC_DATABASE_URL")
        or os.environ.get("CASCADE_DATABASE_URL")
    )
    if not url:
        url = _DEFAULT_DATABASE_URL
        logger.info("Using default database URL: %s", url)
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://") :]
    return url


# ---------------------------------------------------------------------------
# Offline migrations (generate SQL without a live database)
# ---------------------------------------------------------------------------


def run_migrations_offline() -> None:
    context.configure(
        url=_get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


# ---------------------------------------------------------------------------
# Online migrations (connected to a live database)
# ---------------------------------------------------------------------------


def _run_sync_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER constraints in place.
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = _get_database_url()

    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(_run_sync_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
