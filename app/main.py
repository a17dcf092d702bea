"""
Standalone FastAPI app wiring for NeuralMemory.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

import core.config as config
from core.db import DB, init_db
from core.mcp import mcp_stream_app, MCPRouteNormalizerASGI
from core.services import memory_service
from app.errors import install_error_handlers
from app.middleware import configure_middleware
from app.routes.graph import router as graph_router
from app.routes.health import router as health_router
from app.routes.root import router as root_router


tombstone_task = None


async def _tombstone_sweep_loop() -> None:
    if config.TOMBSTONE_SWEEP_INTERVAL_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.TOMBSTONE_SWEEP_INTERVAL_SECONDS)
        try:
            await asyncio.to_thread(memory_service.sweep_tombstones)
        except Exception as exc:
            config.logger.warning("tombstone_sweep_failed", extra={"error": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global tombstone_task
    init_db()
    memory_service.init_ports()
    if config.TOMBSTONE_SWEEP_INTERVAL_SECONDS > 0:
        tombstone_task = asyncio.create_task(_tombstone_sweep_loop())
    try:
        async with mcp_stream_app.lifespan(mcp_stream_app):
            yield
    finally:
        if tombstone_task:
            tombstone_task.cancel()
            try:
                await tombstone_task
            except asyncio.CancelledError:
                pass
        memory_service.close_ports()
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title=config.SERVICE_NAME, redirect_slashes=False, lifespan=lifespan)
configure_middleware(app)
install_error_handlers(app)

app.include_router(health_router)
app.include_router(root_router)
app.include_router(graph_router)

app.mount("/mcp/", mcp_stream_app)


# =============================================================================
# ASGI Application (module-level for production deployment)
# =============================================================================

asgi_app = MCPRouteNormalizerASGI(app)
