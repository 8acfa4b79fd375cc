"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
the runtime context configured.

Web routes are thin proxies to the flash service layer.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from web.routers import config, devices, eject, flash, health, partition, pipeline
from yom_flasher import __version__
from yom_flasher.config import get_settings
from yom_flasher.system.context import create_context


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Locates the system tools once on startup.
    """
    app.state.context = create_context(get_settings())
    yield


def include_routers(application: FastAPI) -> None:
    """Mount every API router on an application."""
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(devices.router, prefix="/devices", tags=["devices"])
    application.include_router(flash.router, prefix="/flash", tags=["flash"])
    application.include_router(
        partition.router, prefix="/partition", tags=["partition"]
    )
    application.include_router(eject.router, prefix="/eject", tags=["eject"])
    application.include_router(pipeline.router, prefix="/pipeline", tags=["pipeline"])


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="YOM Flasher API",
        description="HTTP API for flashing raw images, extending partitions "
        "and safely ejecting devices",
        version=__version__,
        lifespan=lifespan,
    )
    include_routers(application)
    return application


# Create the default application instance
app = create_app()
