"""Shared type definitions for stagedbuild.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class PipelineState(str, Enum):
    """State of a pipeline run.

    Runs move strictly forward through the three stages; any stage may
    move the run to FAILED.
    """

    PENDING = "pending"
    DEPENDENCIES_BUILT = "dependencies_built"
    APPLICATION_BUILT = "application_built"
    IMAGE_PACKAGED = "image_packaged"
    FAILED = "failed"


class BuildStatus(str, Enum):
    """Status of an application build."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CacheState(str, Enum):
    """State of a dependency cache entry."""

    PENDING = "pending"
    READY = "ready"
    BROKEN = "broken"


class Stage(str, Enum):
    """Pipeline stage names used in errors and logs."""

    MANIFEST = "manifest"
    DEPENDENCIES = "dependencies"
    APPLICATION = "application"
    PACKAGING = "packaging"


@dataclass
class ArtifactInfo:
    """Information about an executable artifact."""

    filename: str
    path: str
    size_bytes: int
    sha256: str


__all__ = [
    "ArtifactInfo",
    "BuildStatus",
    "CacheState",
    "PipelineState",
    "Stage",
]
