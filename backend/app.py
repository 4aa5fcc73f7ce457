"""
FastAPI application entry point for the MES integration backend.
"""

from __future__ import annotations

from fastapi import FastAPI

from backend.config import get_settings
from backend.dependencies import get_event_bridge
from backend.routes import admin_router, router


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="MES Integration Backend", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(admin_router, prefix=settings.api_prefix)
    # Work order and item changes become outgoing webhook deliveries.
    get_event_bridge().start()
    return app


app = create_app()
