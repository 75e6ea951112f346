"""Pipeline run endpoints.

- GET /runs - List pipeline runs
- GET /runs/{id} - Get a run by ID
- POST /runs - Run the pipeline for a project
"""

from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from stagedbuild.builds.service import (
    RunNotFoundError,
    get_pipeline_run,
    list_pipeline_runs,
)
from stagedbuild.builds.summaries import run_to_dict
from stagedbuild.config import get_settings
from stagedbuild.errors import ManifestError, PipelineDefinitionError, PipelineError
from stagedbuild.pipeline.service import run_pipeline
from stagedbuild.types import PipelineState
from web.deps import get_db

router = APIRouter()


class RunRequest(BaseModel):
    """Request body for a pipeline run."""

    project_dir: str
    force_rebuild: bool = False


@router.get("")
def list_runs_endpoint(
    state: str | None = Query(None, description="Filter by pipeline state"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List pipeline runs.

    Args:
        state: Filter by state.
        limit: Maximum results.
        db: Database session.

    Returns:
        List of pipeline runs.
    """
    state_filter: PipelineState | None = None
    if state:
        try:
            state_filter = PipelineState(state)
        except ValueError:
            valid = ", ".join(s.value for s in PipelineState)
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_state",
                    "message": f"Invalid state: {state}. Valid values: {valid}",
                },
            ) from None

    runs = list_pipeline_runs(db, state=state_filter, limit=limit)
    return [run_to_dict(r) for r in runs]


@router.get("/{run_id}")
def get_run_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a pipeline run by ID.

    Raises:
        HTTPException: If run not found.
    """
    try:
        return run_to_dict(get_pipeline_run(db, run_id))
    except RunNotFoundError:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={
                "code": "run_not_found",
                "message": f"Pipeline run not found: {run_id}",
            },
        ) from None


@router.post("", status_code=http_status.HTTP_201_CREATED)
def create_run_endpoint(
    request: RunRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Run the pipeline for a project directory.

    The run executes synchronously. A failed run is still recorded and its
    ID is returned in the error detail.

    Raises:
        HTTPException: 400 for manifest or definition problems, 409 when a
            build lock is held, 422 when a build or packaging stage fails.
    """
    project_dir = Path(request.project_dir)
    if not project_dir.is_dir():
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "project_not_found",
                "message": f"Project directory not found: {project_dir}",
            },
        )

    try:
        run = run_pipeline(
            db,
            project_dir,
            settings=get_settings(),
            force_rebuild=request.force_rebuild,
        )
    except (PipelineError, TimeoutError) as e:
        # Keep the failed run; get_db rolls back on HTTPException
        db.commit()
        latest = list_pipeline_runs(db, limit=1)
        detail: dict[str, Any] = (
            e.to_dict()
            if isinstance(e, PipelineError)
            else {"code": "lock_timeout", "message": str(e)}
        )
        detail["run_id"] = latest[0].id if latest else None
        if isinstance(e, ManifestError | PipelineDefinitionError):
            status_code = http_status.HTTP_400_BAD_REQUEST
        elif isinstance(e, TimeoutError):
            status_code = http_status.HTTP_409_CONFLICT
        else:
            status_code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
        raise HTTPException(status_code=status_code, detail=detail) from None

    return run_to_dict(run)
