"""Alembic migration environment configuration.

- Loads the exportledger models for autogenerate support
- Reads the database URL from the environment
- Supports both online and offline migration modes
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from exportledger.db.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    """Get the synchronous database URL.

    Priority:
    1. DATABASE_URL environment variable
    2. EXPORTLEDGER_DATABASE__URL environment variable
    3. sqlalchemy.url from alembic.ini
    """
    url = os.environ.get("DATABASE_URL") or os.environ.get("EXPORTLEDGER_DATABASE__URL")
    if not url:
        url = config.get_main_option("sqlalchemy.url", "")
    # Migrations run on the sync psycopg driver
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode, emitting SQL without a connection."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode within a transaction."""
    connectable = create_engine(get_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
