"""Dependency manifest loading and cache keys.

This module handles:
- Parsing the manifest and lockfile into a DependencyManifest
- Rejecting missing, malformed or unpinned manifests
- Computing content-addressed cache keys
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from stagedbuild.errors import MALFORMED_MANIFEST, ManifestError
from stagedbuild.manifest.cargo import load_cargo_manifest
from stagedbuild.manifest.models import DependencyManifest, DependencyPin

if TYPE_CHECKING:
    from stagedbuild.pipeline.schema import ToolchainSchema

MANIFEST_LOADERS = {
    "cargo": load_cargo_manifest,
}


def load_manifest(project_dir: Path, toolchain: ToolchainSchema) -> DependencyManifest:
    """Load the dependency manifest using the toolchain's manifest format.

    Raises:
        ManifestError: If the format is unknown or the manifest is invalid.
    """
    loader = MANIFEST_LOADERS.get(toolchain.manifest_format)
    if loader is None:
        raise ManifestError(
            f"Unsupported manifest format: {toolchain.manifest_format}",
            code=MALFORMED_MANIFEST,
        )
    return loader(project_dir, toolchain)


__all__ = [
    "MANIFEST_LOADERS",
    "DependencyManifest",
    "DependencyPin",
    "load_manifest",
]
