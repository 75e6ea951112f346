"""Build stages module.

This module handles:
- Dependency pre-builds into the content-addressed cache store
- Application builds against a ready dependency cache
- Toolchain execution and private build workspaces
- Executable artifact storage and build records
"""

from stagedbuild.builds.models import (
    ApplicationBuild,
    DependencyCache,
    PipelineRun,
    RuntimeImage,
)

__all__ = ["ApplicationBuild", "DependencyCache", "PipelineRun", "RuntimeImage"]

# Lazy imports for submodules to avoid circular imports
# Access via stagedbuild.builds.prebuild, etc.
