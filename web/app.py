"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Web routes are thin proxies to core APIs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from stagedbuild import __version__
from stagedbuild.config import get_settings
from stagedbuild.db import create_all_tables, get_engine, get_session_factory
from stagedbuild.log import configure_logging
from web.routers import caches, config, health, images, runs


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Configures logging and initializes database tables on startup.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    app.state.session_factory = get_session_factory(engine)
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="stagedbuild API",
        description="HTTP API for staged dependency pre-builds, application "
        "builds and minimal runtime images",
        version=__version__,
        lifespan=lifespan,
    )

    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(runs.router, prefix="/runs", tags=["runs"])
    application.include_router(caches.router, prefix="/caches", tags=["caches"])
    application.include_router(images.router, prefix="/images", tags=["images"])

    return application


# Create the default application instance
app = create_app()
