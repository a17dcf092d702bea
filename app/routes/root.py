"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": config.SERVICE_NAME,
        "version": config.SERVICE_VERSION,
        "description": "Tenant-isolated knowledge-graph memory for AI agents",
        "vector_backend": config.VECTOR_BACKEND,
        "endpoints": {
            "health": "/health",
            "health_tools": "/health/tools",
            "mcp": "/mcp",
            "graph_export": "/api/graph-export",
            "graph_mutations": "/api/graph",
        },
    }
