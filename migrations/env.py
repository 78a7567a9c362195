import asyncio
from logging.config import fileConfig

import sqlalchemy as sa
from alembic import context
from sqlalchemy import pool
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from app.shared.core.config import get_settings
from app.shared.db.base import Base
from app.shared.db.session import connect_args, database_url

settings = get_settings()
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# `app.shared.db.session` imports every model, so the metadata is complete.
target_metadata = Base.metadata


def compare_type(context, inspected_column, metadata_column, inspected_type, metadata_type):
    """JSON and its PostgreSQL JSONB variant are the same column for autogenerate."""
    json_names = {"JSON", "JSONB"}
    if type(inspected_type).__name__ in json_names and type(metadata_type).__name__ in json_names:
        return False
    if isinstance(inspected_type, postgresql.JSON) and isinstance(metadata_type, sa.JSON):
        return False
    return None


def _url() -> str:
    url = config.get_main_option("sqlalchemy.url") or database_url(settings)
    if not url:
        raise ValueError("DATABASE_URL must be set to run migrations.")
    return url


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout instead of running it."""
    context.configure(
        url=_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=compare_type,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=compare_type,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    url = _url()
    connectable = create_async_engine(
        url, poolclass=pool.NullPool, connect_args=connect_args(settings, url)
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
