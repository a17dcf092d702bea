"""
Engine construction and schema gating for the memory store.

``init_db`` refuses to serve traffic against a schema that is not at the
Alembic head unless ``AUTO_MIGRATE_ON_STARTUP`` lets it upgrade first.
"""

from __future__ import annotations

import os
from typing import Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

import core.config as config

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Process-wide engine and session factory."""

    engine = None
    SessionLocal = None


def build_engine(url: str) -> Engine:
    """Create an engine for ``url``; sqlite connections are shared across worker threads."""
    if url.lower().startswith("sqlite"):
        # Concurrent handoff writers wait on the file lock instead of failing fast.
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": config.SQLITE_BUSY_TIMEOUT_SECONDS},
        )
    return create_engine(url, pool_pre_ping=True)


def _alembic_config(url: Optional[str] = None) -> Config:
    cfg = Config(os.path.join(REPO_ROOT, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(REPO_ROOT, "alembic"))
    if url:
        cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def schema_status(engine: Engine) -> dict:
    """Report the applied and expected Alembic revisions for ``engine``."""
    head = ScriptDirectory.from_config(_alembic_config()).get_current_head()
    with engine.connect() as conn:
        current: Optional[str] = MigrationContext.configure(conn).get_current_revision()
    return {"current": current, "head": head, "up_to_date": head is None or current == head}


def _require_schema_head(engine: Engine) -> None:
    status = schema_status(engine)
    if status["up_to_date"]:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"Memory schema at revision {status['current']}, expected {status['head']}. "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true."
        )

    config.logger.info(
        "schema_upgrade_started",
        extra={"from_revision": status["current"], "to_revision": status["head"]},
    )
    command.upgrade(_alembic_config(config.DATABASE_URL), "head")
    if not schema_status(engine)["up_to_date"]:
        raise RuntimeError("Schema upgrade did not reach the Alembic head")


def init_db() -> None:
    """Validate config, bind the engine and session factory, and gate on the schema head."""
    config.validate_and_prepare_config()
    DB.engine = build_engine(config.DATABASE_URL)
    DB.SessionLocal = sessionmaker(bind=DB.engine)
    _require_schema_head(DB.engine)
    config.logger.info("database_ready", extra={"backend": config.DB_BACKEND})


def dialect_name(db) -> str:
    bind = db.get_bind()
    return bind.dialect.name if bind is not None else ""
