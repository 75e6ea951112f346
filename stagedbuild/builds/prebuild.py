"""Dependency pre-build stage.

Compiles every pinned dependency from the manifest alone, before any
application source is visible, by building a throwaway placeholder
program. The compiled output is kept in a content-addressed store keyed
by the manifest key so later builds with the same manifest reuse it.
"""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from stagedbuild.builds.models import DependencyCache
from stagedbuild.builds.runner import ToolchainExecutionError, run_toolchain, tail_log
from stagedbuild.builds.service import build_lock, find_dependency_cache
from stagedbuild.builds.workspace import (
    WorkspaceError,
    create_workspace,
    discard_workspace,
    purge_package_outputs,
    remove_placeholder,
    stage_manifest_files,
    write_placeholder,
)
from stagedbuild.config import get_settings
from stagedbuild.errors import DEPENDENCY_BUILD_FAILED, DependencyBuildError
from stagedbuild.manifest import load_manifest
from stagedbuild.manifest.cache_key import compute_manifest_key, key_hex
from stagedbuild.types import CacheState

if TYPE_CHECKING:
    from stagedbuild.config import Settings
    from stagedbuild.manifest.models import DependencyManifest
    from stagedbuild.pipeline.schema import PipelineSchema

logger = logging.getLogger(__name__)

CACHE_METADATA_FILE = "cache.json"


def cache_store_dir(settings: Settings, manifest_key: str) -> Path:
    """Return the content-addressed store directory for a manifest key."""
    return settings.cache_dir / key_hex(manifest_key)


def cache_log_path(settings: Settings, manifest_key: str) -> Path:
    """Return the pre-build log path for a manifest key.

    Logs live outside the store so they survive a failed pre-build.
    """
    return settings.cache_dir / ".logs" / f"{key_hex(manifest_key)}.log"


def _write_cache_metadata(
    store_dir: Path,
    manifest_key: str,
    manifest: DependencyManifest,
) -> None:
    metadata = {
        "manifest_key": manifest_key,
        "package_name": manifest.package_name,
        "pins": manifest.pins_as_dicts(),
        "manifest_files": manifest.file_digests,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    with (store_dir / CACHE_METADATA_FILE).open("w", encoding="utf-8") as f:
        json.dump(metadata, f, indent=2, sort_keys=True)


def _fail(
    session: Session,
    cache: DependencyCache,
    store_dir: Path,
    message: str,
    code: str,
    log_path: Path,
) -> DependencyBuildError:
    cache.mark_broken(message)
    session.flush()
    if store_dir.exists():
        shutil.rmtree(store_dir, ignore_errors=True)
    logger.error("Dependency pre-build failed: %s", message)
    return DependencyBuildError(message, code=code, log_path=str(log_path))


def prebuild_dependencies(
    session: Session,
    project_dir: Path,
    pipeline: PipelineSchema,
    settings: Settings | None = None,
    force_rebuild: bool = False,
) -> tuple[DependencyCache, bool]:
    """Build or reuse the dependency cache for a project's manifest.

    Steps:
    1. Load and validate the manifest (fatal before any compilation)
    2. Compute the manifest key and take the cache lock
    3. Reuse an intact ready cache for the key unless force_rebuild
    4. Otherwise compile a placeholder program against the manifest,
       with compiler output directed into the cache store
    5. Remove the placeholder and discard the workspace
    6. Drop the placeholder's own compiled outputs from the store, keeping
       only the dependencies

    Args:
        session: Database session.
        project_dir: Project root containing the manifest.
        pipeline: Pipeline definition.
        settings: Application settings.
        force_rebuild: Recompile even if a cache exists.

    Returns:
        Tuple of (DependencyCache, is_cache_hit).

    Raises:
        ManifestError: If the manifest is missing, malformed or unpinned.
        DependencyBuildError: If any dependency fails to compile.
    """
    if settings is None:
        settings = get_settings()

    toolchain = pipeline.toolchain
    manifest = load_manifest(project_dir, toolchain)
    manifest_key = compute_manifest_key(manifest, toolchain)
    logger.info("Manifest key: %s", manifest_key[:32])

    store_dir = cache_store_dir(settings, manifest_key)
    log_path = cache_log_path(settings, manifest_key)

    with build_lock(
        settings.cache_dir / ".locks", manifest_key, timeout=settings.lock_timeout
    ):
        cache = find_dependency_cache(session, manifest_key)

        if cache is not None and not force_rebuild and cache.is_intact():
            cache.record_hit()
            session.flush()
            logger.info(
                "Dependency cache hit for %s (%d pins)",
                manifest.package_name,
                len(manifest.pins),
            )
            return cache, True

        if cache is None:
            cache = DependencyCache(
                manifest_key=manifest_key,
                package_name=manifest.package_name,
                store_dir=str(store_dir),
            )
            session.add(cache)
        cache.pins = manifest.pins_as_dicts()
        cache.log_path = str(log_path)
        cache.state = CacheState.PENDING.value
        cache.error_message = None
        session.flush()

        # A stale or partial store must not be mixed with a fresh build
        try:
            if store_dir.exists():
                shutil.rmtree(store_dir)
            store_dir.mkdir(parents=True)
        except OSError as e:
            message = f"Failed to prepare cache store {store_dir}: {e}"
            raise _fail(
                session, cache, store_dir, message, "cache_store_error", log_path
            ) from e

        logger.info(
            "Compiling %d pinned dependencies for %s",
            len(manifest.pins),
            manifest.package_name,
        )
        workspace = create_workspace("stagedbuild_deps_", settings.tmp_dir)
        try:
            stage_manifest_files(project_dir, workspace, toolchain)
            write_placeholder(workspace, toolchain)
            result = run_toolchain(
                command=toolchain.build_command,
                workspace=workspace,
                target_dir_env=toolchain.target_dir_env,
                target_dir=store_dir / "target",
                log_path=log_path,
                timeout=settings.build_timeout,
            )
            remove_placeholder(workspace, toolchain)
        except (ToolchainExecutionError, WorkspaceError) as e:
            raise _fail(session, cache, store_dir, str(e), e.code, log_path) from e
        except Exception as e:
            message = f"Dependency pre-build aborted: {e}"
            raise _fail(
                session, cache, store_dir, message, DEPENDENCY_BUILD_FAILED, log_path
            ) from e
        finally:
            discard_workspace(workspace, keep=settings.keep_workspace)

        if not result.success:
            message = f"{result.error_message}\n{tail_log(log_path)}".rstrip()
            raise _fail(
                session,
                cache,
                store_dir,
                message,
                DEPENDENCY_BUILD_FAILED,
                log_path,
            )

        binary_name = toolchain.binary_name or manifest.package_name
        try:
            purge_package_outputs(
                store_dir / "target",
                toolchain.output_subdir,
                manifest.package_name,
                binary_name,
            )
            _write_cache_metadata(store_dir, manifest_key, manifest)
        except OSError as e:
            message = f"Failed to finalize cache store {store_dir}: {e}"
            raise _fail(
                session, cache, store_dir, message, "cache_store_error", log_path
            ) from e
        cache.mark_ready()
        session.flush()
        logger.info(
            "Dependency cache ready for %s in %.1fs",
            manifest.package_name,
            result.duration,
        )
        return cache, False


__all__ = [
    "CACHE_METADATA_FILE",
    "cache_log_path",
    "cache_store_dir",
    "prebuild_dependencies",
]
