"""Alembic environment for the Keystone Postgres schema.

SQLite deployments never run this; db.init_schema() creates tables there.
"""

import os
import sys
from logging.config import fileConfig

# Project root on the path so db.py resolves the same DSN the service uses
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from alembic import context
from sqlalchemy import create_engine

from db import POSTGRES_DSN

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _sqlalchemy_url() -> str:
    url = config.get_main_option("sqlalchemy.url") or POSTGRES_DSN
    # psycopg3 driver, never psycopg2
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def run_migrations_offline():
    """Emit SQL to stdout without a live connection."""
    context.configure(
        url=_sqlalchemy_url(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    engine = create_engine(_sqlalchemy_url())
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=None)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
