"""Pipeline orchestration.

Runs the three stages in order for one project:

1. Dependency pre-build (manifest only)
2. Application build against the dependency cache
3. Runtime image packaging of the executable

Each stage completes fully before the next begins. A failure in any stage
marks the run failed, records the error on the run and re-raises it.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from stagedbuild.builds.appbuild import build_application
from stagedbuild.builds.models import PipelineRun
from stagedbuild.builds.prebuild import prebuild_dependencies
from stagedbuild.config import get_settings
from stagedbuild.errors import UNEXPECTED_ERROR, PipelineError
from stagedbuild.packaging.image import package_runtime_image
from stagedbuild.pipeline.io import load_pipeline
from stagedbuild.types import PipelineState, Stage

if TYPE_CHECKING:
    from stagedbuild.config import Settings
    from stagedbuild.pipeline.schema import PipelineSchema

logger = logging.getLogger(__name__)


def _fail_run(
    session: Session,
    run: PipelineRun,
    error: Exception,
    stage: Stage,
) -> None:
    if isinstance(error, PipelineError):
        error_type = error.code
        stage = error.stage or stage
    else:
        error_type = "lock_timeout"
    run.fail(error_type, str(error), stage=stage.value)
    session.flush()
    logger.error("Pipeline run %d failed at %s: %s", run.id, stage.value, error)


def run_pipeline(
    session: Session,
    project_dir: Path,
    settings: Settings | None = None,
    pipeline: PipelineSchema | None = None,
    force_rebuild: bool = False,
) -> PipelineRun:
    """Run the full build pipeline for a project.

    Args:
        session: Database session.
        project_dir: Project root with manifest and source tree.
        settings: Application settings.
        pipeline: Pipeline definition (loaded from the project if omitted).
        force_rebuild: Rebuild every stage even if cached.

    Returns:
        The PipelineRun in state image_packaged.

    Raises:
        PipelineError: If any stage fails. The failed run is flushed to
            the session before the error propagates. Errors outside the
            pipeline taxonomy are re-raised as PipelineError with code
            ``unexpected_error``.
        TimeoutError: If a build lock cannot be acquired.
    """
    if settings is None:
        settings = get_settings()

    project_dir = project_dir.resolve()
    run = PipelineRun(project_dir=str(project_dir), state=PipelineState.PENDING.value)
    session.add(run)
    session.flush()
    logger.info("Pipeline run %d started for %s", run.id, project_dir)

    stage = Stage.MANIFEST
    try:
        if pipeline is None:
            pipeline = load_pipeline(project_dir)

        stage = Stage.DEPENDENCIES
        cache, cache_hit = prebuild_dependencies(
            session, project_dir, pipeline, settings, force_rebuild=force_rebuild
        )
        run.manifest_key = cache.manifest_key
        run.dependency_cache = cache
        run.dependency_cache_hit = cache_hit
        run.advance(PipelineState.DEPENDENCIES_BUILT)
        session.flush()

        stage = Stage.APPLICATION
        build, build_hit = build_application(
            session, project_dir, pipeline, cache, settings, force_rebuild=force_rebuild
        )
        run.application_build = build
        run.application_cache_hit = build_hit
        run.advance(PipelineState.APPLICATION_BUILT)
        session.flush()

        stage = Stage.PACKAGING
        image, _ = package_runtime_image(session, build, pipeline, settings)
        run.runtime_image = image
        run.advance(PipelineState.IMAGE_PACKAGED)
        session.flush()
    except (PipelineError, TimeoutError) as e:
        _fail_run(session, run, e, stage)
        raise
    except Exception as e:
        error = PipelineError(str(e), code=UNEXPECTED_ERROR, stage=stage)
        _fail_run(session, run, error, stage)
        raise error from e

    logger.info(
        "Pipeline run %d packaged image %s (dependencies %s, application %s)",
        run.id,
        run.runtime_image.digest[:23],
        "reused" if run.dependency_cache_hit else "built",
        "reused" if run.application_cache_hit else "built",
    )
    return run


__all__ = ["run_pipeline"]
