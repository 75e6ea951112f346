"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter

from stagedbuild.config import get_settings

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    settings = get_settings()
    return {
        "cache_dir": str(settings.cache_dir),
        "artifacts_dir": str(settings.artifacts_dir),
        "images_dir": str(settings.images_dir),
        "db_url": settings.db_url,
        "tmp_dir": str(settings.tmp_dir) if settings.tmp_dir else None,
        "log_level": settings.log_level,
        "keep_workspace": settings.keep_workspace,
        "build_timeout": settings.build_timeout,
        "lock_timeout": settings.lock_timeout,
    }
