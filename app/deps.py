"""
Dependency helpers for the standalone FastAPI app.
"""

from __future__ import annotations

from typing import Generator

from fastapi import Depends, Request

from core.context import RequestContext
from core.db import DB
from core.errors import Unauthorized
from core.identity import resolve_request_context


def get_db_session() -> Generator:
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_request_context(request: Request, db=Depends(get_db_session)) -> RequestContext:
    headers = {name.lower(): value for name, value in request.headers.items()}
    context = resolve_request_context(db, headers, source="http")
    if context is None:
        raise Unauthorized()
    return context
