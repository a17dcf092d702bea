"""
Health and dependency endpoints.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, HTTPException
from sqlalchemy import text

import core.config as config
from core.db import DB, schema_status
from core.mcp import tool_inventory_status
from core.services.tombstones import tombstone_backlog
from core.vector_index import get_vector_index


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    schema = schema_status(DB.engine)
    return {
        "ok": schema["up_to_date"],
        "backend": config.DB_BACKEND,
        "schema_revision": schema["current"],
        "schema_expected": schema["head"],
        "schema_up_to_date": schema["up_to_date"],
    }


def _check_vector_health() -> dict:
    status = get_vector_index().status()
    breaker = status.get("circuit_breaker") or {}
    if status.get("backend") == "none":
        state = "disabled"
    elif breaker.get("open"):
        state = "cooldown"
    else:
        state = "ready"
    return {"status": state, **status}


def _tombstone_status() -> dict:
    if DB.SessionLocal is None:
        return {"backlog": None}
    db = DB.SessionLocal()
    try:
        return {"backlog": tombstone_backlog(db)}
    except Exception as exc:
        return {"backlog": None, "error": str(exc)}
    finally:
        db.close()


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    vector_status = _check_vector_health()
    if not db_health.get("ok"):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "vector_index": vector_status},
        )

    return {
        "status": "healthy",
        "service": config.SERVICE_NAME,
        "version": config.SERVICE_VERSION,
        "instance_id": os.environ.get("NEURAL_INSTANCE_ID", "neural-memory-1"),
        "database": db_health,
        "vector_index": vector_status,
        "tombstones": _tombstone_status(),
    }


@router.get("/health/tools")
async def health_tools():
    """Tool inventory health check."""
    tool_inventory = await tool_inventory_status()
    if tool_inventory.get("tool_count", 0) == 0:
        raise HTTPException(status_code=503, detail={"tool_inventory": tool_inventory})

    return {
        "status": "healthy",
        "service": config.SERVICE_NAME,
        "tool_inventory": tool_inventory,
    }
