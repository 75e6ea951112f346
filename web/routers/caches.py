"""Dependency cache endpoints.

- GET /caches - List dependency caches
- GET /caches/{id} - Get a cache by ID
- POST /caches/prune - Prune broken and superseded caches
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from stagedbuild.builds.service import (
    DependencyCacheNotFoundError,
    get_dependency_cache,
    list_dependency_caches,
    prune_dependency_caches,
)
from stagedbuild.builds.summaries import cache_to_dict
from stagedbuild.config import get_settings
from stagedbuild.types import CacheState
from web.deps import get_db

router = APIRouter()


@router.get("")
def list_caches_endpoint(
    state: str | None = Query(None, description="Filter by state"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List dependency caches."""
    state_filter: CacheState | None = None
    if state:
        try:
            state_filter = CacheState(state)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_state",
                    "message": f"Invalid state: {state}. Valid values: pending, ready, broken",
                },
            ) from None

    caches = list_dependency_caches(db, state=state_filter, limit=limit)
    return [cache_to_dict(c) for c in caches]


@router.get("/{cache_id}")
def get_cache_endpoint(
    cache_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a dependency cache by ID."""
    try:
        return cache_to_dict(get_dependency_cache(db, cache_id))
    except DependencyCacheNotFoundError:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={
                "code": "cache_not_found",
                "message": f"Dependency cache not found: {cache_id}",
            },
        ) from None


@router.post("/prune")
def prune_caches_endpoint(
    keep_latest: int = Query(1, ge=0, description="Ready caches to keep per package"),
    dry_run: bool = Query(False, description="Only report what would be pruned"),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Prune broken and superseded dependency caches."""
    pruned = prune_dependency_caches(
        db, keep_latest=keep_latest, dry_run=dry_run, settings=get_settings()
    )
    return {
        "dry_run": dry_run,
        "pruned": [
            {"package_name": c.package_name, "manifest_key": c.manifest_key}
            for c in pruned
        ],
    }
