"""Alembic environment for the chatdesk schema.

The database URL comes from EngineSettings (DATABASE_URL), and online
migrations run on the same async engine the API builds, SQLite pragmas
included.
"""
import asyncio
from logging.config import fileConfig

from sqlalchemy.engine import Connection

from alembic import context

from chatdesk.config import EngineSettings
from chatdesk.database import build_engine, is_sqlite
from chatdesk.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

database_url = EngineSettings().database_url
config.set_main_option("sqlalchemy.url", database_url)


def configure(**options) -> None:
    # SQLite can only ALTER constraints through batch (copy-and-move) mode
    context.configure(
        target_metadata=Base.metadata,
        render_as_batch=is_sqlite(database_url),
        **options,
    )


def run_migrations_offline() -> None:
    """Print the SQL instead of running it (``alembic upgrade --sql``)."""
    configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def migrate(connection: Connection) -> None:
    configure(connection=connection, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = build_engine(database_url)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
