"""Application build stage.

Compiles the real application source against a ready dependency cache
and stores the single resulting executable at a stable location.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from stagedbuild.builds.artifacts import (
    generate_manifest,
    locate_executable,
    store_executable,
    write_manifest,
)
from stagedbuild.builds.models import ApplicationBuild, DependencyCache
from stagedbuild.builds.runner import ToolchainExecutionError, run_toolchain, tail_log
from stagedbuild.builds.service import build_lock, get_cached_application_build
from stagedbuild.builds.workspace import (
    WorkspaceError,
    copy_cache_target,
    create_workspace,
    discard_workspace,
    stage_manifest_files,
    stage_source_tree,
)
from stagedbuild.config import get_settings
from stagedbuild.errors import (
    APPLICATION_BUILD_FAILED,
    EXECUTABLE_NOT_FOUND,
    ApplicationBuildError,
    CacheMismatchError,
)
from stagedbuild.manifest import load_manifest
from stagedbuild.manifest.cache_key import (
    compute_application_key,
    compute_manifest_key,
    hash_source_tree,
    key_hex,
)
from stagedbuild.types import BuildStatus

if TYPE_CHECKING:
    from stagedbuild.config import Settings
    from stagedbuild.pipeline.schema import PipelineSchema

logger = logging.getLogger(__name__)


def check_cache_usable(cache: DependencyCache, manifest_key: str) -> None:
    """Check a dependency cache may be linked for the current manifest.

    Raises:
        CacheMismatchError: If the cache is not ready, missing on disk, or
            was built from a different manifest.
    """
    if cache.manifest_key != manifest_key:
        raise CacheMismatchError(
            f"Dependency cache {cache.manifest_key[:23]} was built from a different "
            f"manifest than the current one ({manifest_key[:23]})"
        )
    if not cache.is_ready():
        raise CacheMismatchError(
            f"Dependency cache {cache.manifest_key[:23]} is {cache.state}, not ready"
        )
    if not cache.is_intact():
        raise CacheMismatchError(
            f"Dependency cache store is missing: {cache.store_dir}",
        )


def _remove_stale_executable(path: Path) -> None:
    # A failed build leaves no executable behind
    if path.exists():
        path.unlink()


def build_application(
    session: Session,
    project_dir: Path,
    pipeline: PipelineSchema,
    dependency_cache: DependencyCache,
    settings: Settings | None = None,
    force_rebuild: bool = False,
) -> tuple[ApplicationBuild, bool]:
    """Build the application executable against a dependency cache.

    Args:
        session: Database session.
        project_dir: Project root with manifest and source tree.
        pipeline: Pipeline definition.
        dependency_cache: Ready cache from the pre-build stage.
        settings: Application settings.
        force_rebuild: Rebuild even if an identical build exists.

    Returns:
        Tuple of (ApplicationBuild, is_cache_hit).

    Raises:
        CacheMismatchError: If the cache does not match the manifest.
        ApplicationBuildError: If compilation fails or no executable results.
    """
    if settings is None:
        settings = get_settings()

    toolchain = pipeline.toolchain
    manifest = load_manifest(project_dir, toolchain)
    manifest_key = compute_manifest_key(manifest, toolchain)
    check_cache_usable(dependency_cache, manifest_key)

    binary_name = toolchain.binary_name or manifest.package_name
    source_hash = hash_source_tree(project_dir, toolchain.source_dirs)
    cache_key, inputs = compute_application_key(
        manifest_key, source_hash, toolchain, binary_name
    )
    logger.info("Application key: %s", cache_key[:32])

    with build_lock(
        settings.artifacts_dir / ".locks", cache_key, timeout=settings.lock_timeout
    ):
        if not force_rebuild:
            cached = get_cached_application_build(session, cache_key)
            if cached is not None and cached.has_executable():
                logger.info(
                    "Application cache hit, reusing build %d (%s)",
                    cached.id,
                    cached.executable_path,
                )
                return cached, True

        build = ApplicationBuild(
            dependency_cache_id=dependency_cache.id,
            cache_key=cache_key,
            source_hash=source_hash,
            input_snapshot=inputs.to_dict(),
            binary_name=binary_name,
            status=BuildStatus.PENDING.value,
        )
        session.add(build)
        session.flush()

        artifact_dir = settings.artifacts_dir / key_hex(cache_key)
        log_path = artifact_dir / "build.log"
        build.log_path = str(log_path)
        build.mark_running()
        session.flush()

        workspace = create_workspace("stagedbuild_app_", settings.tmp_dir)
        try:
            stage_manifest_files(project_dir, workspace, toolchain)
            stage_source_tree(project_dir, workspace, toolchain.source_dirs)
            target_dir = workspace / "target"
            # Prune takes the same lock before deleting a store
            with build_lock(
                settings.cache_dir / ".locks",
                dependency_cache.manifest_key,
                timeout=settings.lock_timeout,
            ):
                copy_cache_target(
                    Path(dependency_cache.store_dir) / "target", target_dir
                )

            result = run_toolchain(
                command=toolchain.build_command,
                workspace=workspace,
                target_dir_env=toolchain.target_dir_env,
                target_dir=target_dir,
                log_path=log_path,
                timeout=settings.build_timeout,
            )

            if not result.success:
                message = f"{result.error_message}\n{tail_log(log_path)}".rstrip()
                build.mark_failed(error_type=APPLICATION_BUILD_FAILED, message=message)
                session.flush()
                raise ApplicationBuildError(message, log_path=str(log_path))

            executable = locate_executable(
                target_dir, toolchain.output_subdir, binary_name
            )
            if executable is None:
                message = (
                    f"Executable '{binary_name}' not found in "
                    f"{toolchain.output_subdir}/ after a successful build"
                )
                build.mark_failed(error_type=EXECUTABLE_NOT_FOUND, message=message)
                session.flush()
                raise ApplicationBuildError(
                    message, code=EXECUTABLE_NOT_FOUND, log_path=str(log_path)
                )

            artifact = store_executable(executable, artifact_dir, binary_name)

        except ApplicationBuildError:
            _remove_stale_executable(artifact_dir / binary_name)
            raise
        except TimeoutError as e:
            build.mark_failed(error_type="lock_timeout", message=str(e))
            session.flush()
            raise
        except (ToolchainExecutionError, WorkspaceError, OSError) as e:
            code = getattr(e, "code", APPLICATION_BUILD_FAILED)
            build.mark_failed(error_type=code, message=str(e))
            session.flush()
            _remove_stale_executable(artifact_dir / binary_name)
            raise ApplicationBuildError(str(e), code=code, log_path=str(log_path)) from e
        finally:
            discard_workspace(workspace, keep=settings.keep_workspace)

        build.executable_path = artifact.path
        build.sha256 = artifact.sha256
        build.size_bytes = artifact.size_bytes
        write_manifest(
            generate_manifest(
                artifact,
                build_id=build.id,
                cache_key=cache_key,
                manifest_key=manifest_key,
                build_inputs=inputs.to_dict(),
            ),
            artifact_dir / "manifest.json",
        )
        build.mark_succeeded()
        session.flush()

        logger.info(
            "Application build %d succeeded in %.1fs (%d bytes)",
            build.id,
            result.duration,
            artifact.size_bytes,
        )
        return build, False


__all__ = ["build_application", "check_cache_usable"]
