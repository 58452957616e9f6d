"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from diskimager import __version__
from diskimager.config import get_settings
from diskimager.db import init_db
from diskimager.imaging.service import ImagingOrchestrator
from web.routers import config, devices, health, jobs


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables and the imaging orchestrator on startup.
    Any job still running at shutdown is cancelled.
    """
    settings = get_settings()
    app.state.session_factory = init_db(settings.db_url)
    app.state.orchestrator = ImagingOrchestrator(
        settings=settings, session_factory=app.state.session_factory
    )
    yield
    app.state.orchestrator.cancel_active_job()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Disk Imager API",
        description="HTTP API for writing ISO images to removable devices "
        "and capturing devices into image files",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(devices.router, prefix="/devices", tags=["devices"])
    application.include_router(jobs.router, prefix="/jobs", tags=["jobs"])

    return application


# Create the default application instance
app = create_app()
