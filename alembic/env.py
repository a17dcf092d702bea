"""Alembic environment for the neural memory schema."""

from __future__ import annotations

import os

from alembic import context
from sqlalchemy import engine_from_config, pool

import core.config as config
from core.models import Base

alembic_config = context.config
target_metadata = Base.metadata


def _database_url() -> str:
    url = alembic_config.get_main_option("sqlalchemy.url")
    return os.environ.get("DATABASE_URL") or config.DATABASE_URL or url


def run_migrations_offline() -> None:
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = alembic_config.get_section(alembic_config.config_ini_section) or {}
    section["sqlalchemy.url"] = _database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
