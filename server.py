"""
NeuralMemory - tenant-isolated knowledge-graph memory for AI agents.
Entry point for running the HTTP + MCP server under uvicorn.
"""

import os

import uvicorn

from app.main import asgi_app


def main() -> None:
    uvicorn.run(
        asgi_app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
