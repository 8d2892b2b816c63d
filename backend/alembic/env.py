"""
Alembic environment for the tollgate schema (async engine).

  • The URL comes from tollgate.core.config unless overridden on the
    command line:  alembic -x dburl=postgresql+asyncpg://... upgrade head
  • Autogenerate diffs against Base.metadata with type comparison on, so
    JSON maps, UTC timestamps and NUMERIC precision changes are noticed.
  • SQLite (local/test databases) gets batch mode, since it cannot ALTER
    most constraints in place.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from tollgate.core.config import settings
from tollgate.core.database import Base

# Every model module registers its tables on Base.metadata
import tollgate.models.api_key  # noqa: F401
import tollgate.models.key_lineage  # noqa: F401
import tollgate.models.rate_window  # noqa: F401
import tollgate.models.tier  # noqa: F401
import tollgate.models.usage  # noqa: F401

config = context.config

database_url = context.get_x_argument(as_dictionary=True).get("dburl", settings.DATABASE_URL)
config.set_main_option("sqlalchemy.url", database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:  # type: ignore[no-untyped-def]
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=database_url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout without connecting."""
    _configure(
        url=database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_with_connection)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
