"""Router modules for FastAPI web API."""

from web.routers import caches, config, health, images, runs

__all__ = ["caches", "config", "health", "images", "runs"]
