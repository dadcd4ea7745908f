import asyncio
from logging.config import fileConfig
from alembic import context
from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv()

# Importing database registers every table on SQLModel.metadata
from roomview.core.config import settings
from roomview.core.database import SQLModel, async_database_url, build_engine

# Alembic Config object
config = context.config

# alembic -x database_url=... overrides the configured URL (one-off migrations)
DATABASE_URL = async_database_url(context.get_x_argument(as_dictionary=True).get("database_url", settings.DATABASE_URL))
IS_SQLITE = DATABASE_URL.startswith("sqlite")

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    """Emit SQL for the four tables without connecting."""
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=IS_SQLITE,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    # SQLite cannot ALTER most constraints in place
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=IS_SQLITE,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    # Same engine setup as the app and workers, NullPool included
    engine = build_engine(DATABASE_URL, worker=True)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
