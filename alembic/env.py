"""
Alembic Environment Configuration
=================================

Runs migrations for the entitlement tables on the async engine. The URL
comes from application settings (``DATABASE_URL``), never from
``alembic.ini``. SQLite URLs run in batch mode so ALTERs work locally.
"""

import sys
from pathlib import Path

# Add project root to Python path so 'entitlement_engine' can be found
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.ext.asyncio import create_async_engine

from entitlement_engine.config import settings
from entitlement_engine.db.base import Base
import entitlement_engine.models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def database_url() -> str:
    url = settings.database_url_async
    if not url:
        raise RuntimeError("DATABASE_URL is not set; cannot run migrations")
    return url


def _configure(**kwargs) -> None:
    url = make_url(database_url())
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        render_as_batch=url.get_backend_name() == "sqlite",
        transaction_per_migration=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of connecting."""
    _configure(
        url=database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    engine = create_async_engine(database_url(), poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
