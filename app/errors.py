"""
Error rendering for the HTTP surface.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from core.errors import MemoryEngineError, ValidationIssue

STATUS_BY_TITLE = {
    "Bad Request": 400,
    "Unauthorized": 401,
    "Forbidden": 403,
    "Not Found": 404,
    "Content Rejected": 422,
}


def payload_response(payload: dict, headers: dict | None = None) -> JSONResponse:
    """Render a service payload, mapping error payloads to their HTTP status."""
    status_code = 200
    if isinstance(payload, dict) and payload.get("status") == "error":
        status_code = STATUS_BY_TITLE.get(payload.get("error"), 400)
    return JSONResponse(payload, status_code=status_code, headers=headers)


async def _engine_error_handler(request: Request, exc: MemoryEngineError) -> JSONResponse:
    if exc.status_code == 401:
        return JSONResponse({"error": exc.title}, status_code=401)
    return JSONResponse({"error": exc.title, "message": str(exc)}, status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: ValidationIssue) -> JSONResponse:
    return JSONResponse(
        {"error": "Bad Request", "field": exc.field, "message": str(exc)},
        status_code=400,
    )


def install_error_handlers(app) -> None:
    app.add_exception_handler(MemoryEngineError, _engine_error_handler)
    app.add_exception_handler(ValidationIssue, _validation_error_handler)
