"""
MCP authentication middleware for tenant isolation.

Resolves the caller's RequestContext from request headers and sets it in a
contextvar for the duration of the request, so tools never take identity from
their own arguments.
"""

from __future__ import annotations

import json
from typing import Optional

from core.context import (
    RequestContext,
    get_current_request_context,
    reset_current_request_context,
    set_current_request_context,
)
from core.db import DB
from core.identity import resolve_request_context
import core.config as config


def get_current_context() -> Optional[RequestContext]:
    """Context set by the middleware for this request, if any."""
    return get_current_request_context()


def _headers_from_scope(scope) -> dict[str, str]:
    headers = {}
    for header_name, header_value in scope.get("headers", []):
        headers[header_name.decode("latin1").lower()] = header_value.decode("latin1")
    return headers


class MCPAuthMiddleware:
    """
    ASGI middleware that authenticates MCP requests and binds the tenant context.
    """

    def __init__(self, app):
        self.app = app

    def __getattr__(self, name):
        return getattr(self.app, name)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if DB.SessionLocal is None:
            config.logger.error("mcp_auth_middleware_no_db")
            await self._send_error(send, 500, "Database not initialized")
            return

        headers = _headers_from_scope(scope)
        db = DB.SessionLocal()
        try:
            request_context = resolve_request_context(db, headers, source="mcp")
        except Exception as exc:
            config.logger.error(
                "mcp_auth_middleware_error",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            await self._send_error(send, 500, "Internal server error")
            return
        finally:
            db.close()

        if request_context is None:
            await self._send_error(send, 401, "Unauthorized")
            return

        token = set_current_request_context(request_context)
        try:
            await self.app(scope, receive, send)
        finally:
            reset_current_request_context(token)

    async def _send_error(self, send, status_code: int, detail: str):
        """Send JSON error response."""
        body = json.dumps({"error": detail}).encode("utf-8")

        await send({
            "type": "http.response.start",
            "status": status_code,
            "headers": [
                [b"content-type", b"application/json"],
                [b"content-length", str(len(body)).encode("latin1")],
            ],
        })

        await send({
            "type": "http.response.body",
            "body": body,
        })
