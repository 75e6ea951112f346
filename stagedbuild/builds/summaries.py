"""JSON-ready summaries of build records for CLI and HTTP output."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from stagedbuild.builds.models import (
    ApplicationBuild,
    DependencyCache,
    PipelineRun,
    RuntimeImage,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def cache_to_dict(cache: DependencyCache) -> dict[str, Any]:
    """Convert a dependency cache to a dictionary."""
    return {
        "id": cache.id,
        "manifest_key": cache.manifest_key,
        "package_name": cache.package_name,
        "state": cache.state,
        "pins": cache.pin_labels(),
        "store_dir": cache.store_dir,
        "log_path": cache.log_path,
        "hit_count": cache.hit_count,
        "created_at": _iso(cache.created_at),
        "ready_at": _iso(cache.ready_at),
        "last_used_at": _iso(cache.last_used_at),
        "error_message": cache.error_message,
    }


def build_to_dict(build: ApplicationBuild) -> dict[str, Any]:
    """Convert an application build to a dictionary."""
    return {
        "id": build.id,
        "dependency_cache_id": build.dependency_cache_id,
        "cache_key": build.cache_key,
        "source_hash": build.source_hash,
        "binary_name": build.binary_name,
        "status": build.status,
        "requested_at": _iso(build.requested_at),
        "started_at": _iso(build.started_at),
        "finished_at": _iso(build.finished_at),
        "executable_path": build.executable_path,
        "sha256": build.sha256,
        "size_bytes": build.size_bytes,
        "log_path": build.log_path,
        "error_type": build.error_type,
        "error_message": build.error_message,
    }


def image_to_dict(image: RuntimeImage) -> dict[str, Any]:
    """Convert a runtime image to a dictionary."""
    return {
        "id": image.id,
        "application_build_id": image.application_build_id,
        "digest": image.digest,
        "bundle_dir": image.bundle_dir,
        "base_image": image.base_image,
        "port": image.port,
        "env": image.env or {},
        "command": image.command or [],
        "layer_size_bytes": image.layer_size_bytes,
        "created_at": _iso(image.created_at),
    }


def run_to_dict(run: PipelineRun) -> dict[str, Any]:
    """Convert a pipeline run to a dictionary."""
    return {
        "id": run.id,
        "project_dir": run.project_dir,
        "state": run.state,
        "manifest_key": run.manifest_key,
        "dependency_cache_id": run.dependency_cache_id,
        "application_build_id": run.application_build_id,
        "runtime_image_id": run.runtime_image_id,
        "dependency_cache_hit": run.dependency_cache_hit,
        "application_cache_hit": run.application_cache_hit,
        "image_digest": run.runtime_image.digest if run.runtime_image else None,
        "requested_at": _iso(run.requested_at),
        "finished_at": _iso(run.finished_at),
        "error_stage": run.error_stage,
        "error_type": run.error_type,
        "error_message": run.error_message,
    }


__all__ = ["build_to_dict", "cache_to_dict", "image_to_dict", "run_to_dict"]
