"""Pipeline error taxonomy.

Every stage is all-or-nothing: a failure raises one of these errors, the
pipeline run is marked failed and nothing from the failing stage is kept.
Each error carries a stable ``code`` for CLI and HTTP surfaces.
"""

from __future__ import annotations

from typing import Any

from stagedbuild.types import Stage

# Error codes
MISSING_MANIFEST = "missing_manifest"
MALFORMED_MANIFEST = "malformed_manifest"
UNPINNED_MANIFEST = "unpinned_manifest"
DEPENDENCY_BUILD_FAILED = "dependency_build_failed"
APPLICATION_BUILD_FAILED = "application_build_failed"
EXECUTABLE_NOT_FOUND = "executable_not_found"
BUILD_TIMEOUT = "build_timeout"
CACHE_MISMATCH = "cache_mismatch"
INVALID_TRANSITION = "invalid_transition"
PACKAGING_FAILED = "packaging_failed"
INVALID_PIPELINE = "invalid_pipeline"
UNEXPECTED_ERROR = "unexpected_error"


class PipelineError(Exception):
    """Base error for all pipeline stages."""

    def __init__(
        self,
        message: str,
        code: str = "pipeline_error",
        stage: Stage | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.stage = stage
        self.log_path = log_path

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {"code": self.code, "message": str(self)}
        if self.stage is not None:
            result["stage"] = self.stage.value
        if self.log_path is not None:
            result["log_path"] = self.log_path
        return result


class PipelineDefinitionError(PipelineError):
    """Raised when a pipeline definition file is invalid."""

    def __init__(self, message: str, code: str = INVALID_PIPELINE) -> None:
        super().__init__(message, code=code)


class ManifestError(PipelineError):
    """Raised when the dependency manifest is missing, malformed or unpinned."""

    def __init__(self, message: str, code: str = MALFORMED_MANIFEST) -> None:
        super().__init__(message, code=code, stage=Stage.MANIFEST)


class DependencyBuildError(PipelineError):
    """Raised when a pinned dependency fails to compile."""

    def __init__(
        self,
        message: str,
        code: str = DEPENDENCY_BUILD_FAILED,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message, code=code, stage=Stage.DEPENDENCIES, log_path=log_path)


class CacheMismatchError(PipelineError):
    """Raised when a dependency cache does not match the current manifest."""

    def __init__(self, message: str, code: str = CACHE_MISMATCH) -> None:
        super().__init__(message, code=code, stage=Stage.APPLICATION)


class ApplicationBuildError(PipelineError):
    """Raised when the application fails to compile against the cache."""

    def __init__(
        self,
        message: str,
        code: str = APPLICATION_BUILD_FAILED,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message, code=code, stage=Stage.APPLICATION, log_path=log_path)


class PackagingError(PipelineError):
    """Raised when the runtime image cannot be packaged."""

    def __init__(self, message: str, code: str = PACKAGING_FAILED) -> None:
        super().__init__(message, code=code, stage=Stage.PACKAGING)


class InvalidTransitionError(PipelineError):
    """Raised on a pipeline state transition that is not allowed."""

    def __init__(self, current: str, target: str, reason: str | None = None) -> None:
        message = f"Cannot transition pipeline from '{current}' to '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, code=INVALID_TRANSITION)
        self.current = current
        self.target = target


__all__ = [
    "APPLICATION_BUILD_FAILED",
    "BUILD_TIMEOUT",
    "CACHE_MISMATCH",
    "DEPENDENCY_BUILD_FAILED",
    "EXECUTABLE_NOT_FOUND",
    "INVALID_PIPELINE",
    "INVALID_TRANSITION",
    "MALFORMED_MANIFEST",
    "MISSING_MANIFEST",
    "PACKAGING_FAILED",
    "UNEXPECTED_ERROR",
    "UNPINNED_MANIFEST",
    "ApplicationBuildError",
    "CacheMismatchError",
    "DependencyBuildError",
    "InvalidTransitionError",
    "ManifestError",
    "PackagingError",
    "PipelineDefinitionError",
    "PipelineError",
]
