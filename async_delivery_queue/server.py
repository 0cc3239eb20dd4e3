"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that reads the
settings through :func:`load_settings` and runs the dispatcher inside the
application lifespan.

Usage:
    uvicorn async_delivery_queue.server:app --host 0.0.0.0 --port 8000

Environment variables:
    ADQ_CONFIG: Path to the INI file (default: config.ini)
    ADQ_DB_PATH: Path to SQLite database (default: /data/delivery_queue.db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Mapping

from fastapi import FastAPI

from .api import create_app
from .config_loader import load_settings
from .core import AsyncDeliveryCore


def build_app(settings: Mapping[str, Any], core: AsyncDeliveryCore | None = None) -> FastAPI:
    """Create the HTTP application and tie the core lifecycle to it."""
    core = core or AsyncDeliveryCore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=settings.get("api_token"), lifespan=lifespan)


def __getattr__(name: str) -> Any:
    # Built on first access so importing the module has no side effects.
    if name == "app":
        application = build_app(load_settings())
        globals()["app"] = application
        return application
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
