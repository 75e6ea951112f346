"""Pipeline definition and orchestration module.

This module handles:
- Loading and validating pipeline definitions (YAML/JSON)
- The run state machine
- Running the three stages in order
"""

from stagedbuild.pipeline.schema import (
    PipelineSchema,
    RuntimeImageSchema,
    ToolchainSchema,
)

__all__ = ["PipelineSchema", "RuntimeImageSchema", "ToolchainSchema"]
