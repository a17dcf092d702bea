"""
HTTP middleware for the memory service.
"""

from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

import core.config as config
from core.identity import API_KEY_HEADER

# Graph dashboards revalidate exports, so the ETag must be readable cross-origin.
EXPOSED_HEADERS = ["ETag", "Cache-Control"]
ALLOWED_HEADERS = ["Authorization", "Content-Type", "If-None-Match", API_KEY_HEADER]
ALLOWED_METHODS = ["GET", "POST", "PATCH", "DELETE", "OPTIONS"]


def configure_middleware(app):
    if config.TRUSTED_HOSTS:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=config.TRUSTED_HOSTS)

    if not config.CORS_ALLOWED_ORIGINS:
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOWED_ORIGINS,
        allow_credentials="*" not in config.CORS_ALLOWED_ORIGINS,
        allow_methods=ALLOWED_METHODS,
        allow_headers=ALLOWED_HEADERS,
        expose_headers=EXPOSED_HEADERS,
    )
