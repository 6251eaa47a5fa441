import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config
from alembic import context

from foldly.db.base import Base
from foldly.db.session import ASYNC_DATABASE_URL

# Explicitly import the model classes so Alembic detects them
from foldly.models.user import User  # noqa: F401
from foldly.models.workspace import Workspace  # noqa: F401
from foldly.models.folder import Folder  # noqa: F401
from foldly.models.link import Link  # noqa: F401
from foldly.models.permission import Permission  # noqa: F401
from foldly.models.file import File  # noqa: F401

# Alembic Config object
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Override DB URL from settings
config.set_main_option("sqlalchemy.url", ASYNC_DATABASE_URL)

# Target metadata for autogenerate
target_metadata = Base.metadata

def run_migrations_offline():
    context.configure(url=ASYNC_DATABASE_URL, target_metadata=target_metadata, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()

def do_run_migrations(connection):
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()

async def run_migrations_online():
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()

if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
