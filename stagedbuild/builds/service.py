"""Build record service module.

This module provides:
- build_lock(): file-based locking per cache key
- Lookup and listing of dependency caches, application builds,
  runtime images and pipeline runs
- Pruning of dependency caches
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from stagedbuild.builds.models import (
    ApplicationBuild,
    DependencyCache,
    PipelineRun,
    RuntimeImage,
)
from stagedbuild.config import get_settings
from stagedbuild.types import BuildStatus, CacheState, PipelineState

if TYPE_CHECKING:
    from stagedbuild.config import Settings

logger = logging.getLogger(__name__)

PRUNED_MARKER = "pruned"


class RecordNotFoundError(Exception):
    """Raised when a record is not found."""

    def __init__(self, kind: str, identifier: object, code: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.identifier = identifier
        self.code = code


class DependencyCacheNotFoundError(RecordNotFoundError):
    """Raised when a dependency cache is not found."""

    def __init__(self, identifier: object) -> None:
        super().__init__("Dependency cache", identifier, "cache_not_found")


class BuildNotFoundError(RecordNotFoundError):
    """Raised when an application build is not found."""

    def __init__(self, build_id: int) -> None:
        super().__init__("Build", build_id, "build_not_found")
        self.build_id = build_id


class ImageNotFoundError(RecordNotFoundError):
    """Raised when a runtime image is not found."""

    def __init__(self, identifier: object) -> None:
        super().__init__("Runtime image", identifier, "image_not_found")


class RunNotFoundError(RecordNotFoundError):
    """Raised when a pipeline run is not found."""

    def __init__(self, run_id: int) -> None:
        super().__init__("Pipeline run", run_id, "run_not_found")
        self.run_id = run_id


@contextmanager
def build_lock(
    lock_dir: Path,
    cache_key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for a cache key.

    Uses a file-based lock to prevent concurrent builds with the same key.

    Args:
        lock_dir: Directory for lock files.
        cache_key: Cache key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_key = cache_key.replace(":", "_").replace("/", "_")[:64]
    lock_file = lock_dir / f"build_{safe_key}.lock"

    logger.debug("Acquiring build lock for key: %s", cache_key[:32])

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for build lock on {cache_key[:32]}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Build lock acquired for key: %s", cache_key[:32])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Build lock released for key: %s", cache_key[:32])
        os.close(fd)


# Dependency caches


def find_dependency_cache(session: Session, manifest_key: str) -> DependencyCache | None:
    """Find the cache row for a manifest key, whatever its state."""
    stmt = select(DependencyCache).where(DependencyCache.manifest_key == manifest_key)
    return session.execute(stmt).scalar_one_or_none()


def get_dependency_cache(session: Session, cache_id: int) -> DependencyCache:
    """Get a dependency cache by ID.

    Raises:
        DependencyCacheNotFoundError: If not found.
    """
    cache = session.get(DependencyCache, cache_id)
    if cache is None:
        raise DependencyCacheNotFoundError(cache_id)
    return cache


def list_dependency_caches(
    session: Session,
    state: CacheState | None = None,
    limit: int = 100,
) -> list[DependencyCache]:
    """List dependency caches, most recent first."""
    stmt = select(DependencyCache)
    if state is not None:
        stmt = stmt.where(DependencyCache.state == state.value)
    stmt = stmt.order_by(DependencyCache.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


def prune_dependency_caches(
    session: Session,
    keep_latest: int = 1,
    dry_run: bool = False,
    settings: Settings | None = None,
) -> list[DependencyCache]:
    """Remove broken caches and all but the most recently used ready caches.

    A cache whose lock is held by a running pre-build or application build
    is skipped rather than waited for.

    Args:
        session: Database session.
        keep_latest: Number of ready caches to keep per package.
        dry_run: Only report what would be removed.
        settings: Application settings (locate the cache locks).

    Returns:
        The cache rows that were (or would be) removed.
    """
    if settings is None:
        settings = get_settings()

    caches = list(
        session.execute(select(DependencyCache).order_by(DependencyCache.id.desc()))
        .scalars()
        .all()
    )

    kept_per_package: dict[str, int] = {}
    to_remove: list[DependencyCache] = []

    def _recency(cache: DependencyCache) -> float:
        stamp = cache.last_used_at or cache.ready_at or cache.created_at
        return stamp.timestamp() if stamp else 0.0

    for cache in sorted(caches, key=_recency, reverse=True):
        if not cache.is_ready():
            if cache.error_message != PRUNED_MARKER:
                to_remove.append(cache)
            continue
        count = kept_per_package.get(cache.package_name, 0)
        if count < keep_latest:
            kept_per_package[cache.package_name] = count + 1
        else:
            to_remove.append(cache)

    if dry_run:
        return to_remove

    lock_dir = settings.cache_dir / ".locks"
    pruned: list[DependencyCache] = []
    for cache in to_remove:
        try:
            with build_lock(lock_dir, cache.manifest_key, timeout=0):
                store = Path(cache.store_dir)
                if store.exists():
                    shutil.rmtree(store, ignore_errors=True)
                # Rows stay so existing builds keep their cache reference
                cache.state = CacheState.BROKEN.value
                cache.error_message = PRUNED_MARKER
        except TimeoutError:
            logger.warning(
                "Dependency cache %s is in use, not pruned", cache.manifest_key[:32]
            )
            continue
        pruned.append(cache)
        logger.info("Pruned dependency cache %s", cache.manifest_key[:32])
    session.flush()
    return pruned


# Application builds


def get_cached_application_build(
    session: Session,
    cache_key: str,
) -> ApplicationBuild | None:
    """Find the newest succeeded build with an application key."""
    stmt = (
        select(ApplicationBuild)
        .where(
            ApplicationBuild.cache_key == cache_key,
            ApplicationBuild.status == BuildStatus.SUCCEEDED.value,
        )
        .order_by(ApplicationBuild.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def get_application_build(session: Session, build_id: int) -> ApplicationBuild:
    """Get an application build by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(ApplicationBuild, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_application_builds(
    session: Session,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[ApplicationBuild]:
    """List application builds with optional filters."""
    stmt = select(ApplicationBuild)
    if status is not None:
        stmt = stmt.where(ApplicationBuild.status == status.value)
    stmt = stmt.order_by(ApplicationBuild.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


# Runtime images


def find_runtime_image(session: Session, digest: str) -> RuntimeImage | None:
    """Find a runtime image by digest."""
    stmt = select(RuntimeImage).where(RuntimeImage.digest == digest)
    return session.execute(stmt).scalar_one_or_none()


def get_runtime_image(session: Session, image_id: int) -> RuntimeImage:
    """Get a runtime image by ID.

    Raises:
        ImageNotFoundError: If not found.
    """
    image = session.get(RuntimeImage, image_id)
    if image is None:
        raise ImageNotFoundError(image_id)
    return image


def list_runtime_images(session: Session, limit: int = 100) -> list[RuntimeImage]:
    """List runtime images, most recent first."""
    stmt = select(RuntimeImage).order_by(RuntimeImage.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


# Pipeline runs


def get_pipeline_run(session: Session, run_id: int) -> PipelineRun:
    """Get a pipeline run by ID.

    Raises:
        RunNotFoundError: If not found.
    """
    run = session.get(PipelineRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def list_pipeline_runs(
    session: Session,
    state: PipelineState | None = None,
    limit: int = 100,
) -> list[PipelineRun]:
    """List pipeline runs with optional state filter."""
    stmt = select(PipelineRun)
    if state is not None:
        stmt = stmt.where(PipelineRun.state == state.value)
    stmt = stmt.order_by(PipelineRun.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildNotFoundError",
    "DependencyCacheNotFoundError",
    "ImageNotFoundError",
    "RecordNotFoundError",
    "RunNotFoundError",
    "build_lock",
    "find_dependency_cache",
    "find_runtime_image",
    "get_application_build",
    "get_cached_application_build",
    "get_dependency_cache",
    "get_pipeline_run",
    "get_runtime_image",
    "list_application_builds",
    "list_dependency_caches",
    "list_pipeline_runs",
    "list_runtime_images",
    "prune_dependency_caches",
]
