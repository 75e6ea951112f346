"""Runtime image endpoints.

- GET /images - List runtime images
- GET /images/{id} - Get an image record by ID
- GET /images/{id}/inspect - Contents and declarations of an image bundle
"""

from dataclasses import asdict
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from stagedbuild.builds.service import (
    ImageNotFoundError,
    get_runtime_image,
    list_runtime_images,
)
from stagedbuild.builds.summaries import image_to_dict
from stagedbuild.errors import PackagingError
from stagedbuild.packaging.image import inspect_image
from web.deps import get_db

router = APIRouter()


def _not_found(image_id: int) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={
            "code": "image_not_found",
            "message": f"Runtime image not found: {image_id}",
        },
    )


@router.get("")
def list_images_endpoint(
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List runtime images."""
    return [image_to_dict(i) for i in list_runtime_images(db, limit=limit)]


@router.get("/{image_id}")
def get_image_endpoint(
    image_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a runtime image record by ID."""
    try:
        return image_to_dict(get_runtime_image(db, image_id))
    except ImageNotFoundError:
        raise _not_found(image_id) from None


@router.get("/{image_id}/inspect")
def inspect_image_endpoint(
    image_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Inspect what an image bundle contains and declares."""
    try:
        image = get_runtime_image(db, image_id)
    except ImageNotFoundError:
        raise _not_found(image_id) from None

    try:
        return asdict(inspect_image(Path(image.bundle_dir)))
    except PackagingError as e:
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail=e.to_dict(),
        ) from None
