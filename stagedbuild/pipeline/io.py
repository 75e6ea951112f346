"""Pipeline definition loading.

Projects may carry a ``stagedbuild.yaml`` (or ``stagedbuild.json``) next to
their manifest. When neither exists the defaults are used.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stagedbuild.errors import PipelineDefinitionError
from stagedbuild.pipeline.schema import PipelineSchema

logger = logging.getLogger(__name__)

DEFINITION_FILENAMES = ("stagedbuild.yaml", "stagedbuild.yml", "stagedbuild.json")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_pipeline_data(data: dict[str, Any]) -> PipelineSchema:
    """Parse and validate pipeline definition data.

    Raises:
        PipelineDefinitionError: If data does not match the schema.
    """
    try:
        return PipelineSchema.model_validate(data)
    except ValidationError as e:
        raise PipelineDefinitionError(f"Invalid pipeline definition: {e}") from e


def find_definition(project_dir: Path) -> Path | None:
    """Return the pipeline definition file in a project, if any."""
    for name in DEFINITION_FILENAMES:
        candidate = project_dir / name
        if candidate.is_file():
            return candidate
    return None


def load_pipeline(project_dir: Path, path: Path | None = None) -> PipelineSchema:
    """Load the pipeline definition for a project.

    Args:
        project_dir: Project root directory.
        path: Explicit definition file; searched in project_dir if omitted.

    Returns:
        Validated PipelineSchema (defaults when no file exists).

    Raises:
        PipelineDefinitionError: If the file cannot be read or validated.
    """
    if path is None:
        path = find_definition(project_dir)
    if path is None:
        logger.debug("No pipeline definition in %s, using defaults", project_dir)
        return PipelineSchema()

    try:
        if path.suffix.lower() == ".json":
            data = load_json(path)
        else:
            data = load_yaml(path)
    except FileNotFoundError as e:
        raise PipelineDefinitionError(f"Pipeline definition not found: {path}") from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise PipelineDefinitionError(f"Failed to parse {path}: {e}") from e

    logger.info("Loaded pipeline definition from %s", path)
    return parse_pipeline_data(data)


__all__ = [
    "DEFINITION_FILENAMES",
    "find_definition",
    "load_json",
    "load_pipeline",
    "load_yaml",
    "parse_pipeline_data",
]
