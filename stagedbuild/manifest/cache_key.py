"""Cache key computation for the build stages.

This module handles:
- The dependency cache key, derived from manifest content only
- Source tree hashing
- The application build key (manifest key + source hash)

Keys are SHA-256 hashes of canonical JSON, so identical inputs always
map to the same cache entry.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stagedbuild.manifest.models import DependencyManifest
    from stagedbuild.pipeline.schema import ToolchainSchema

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"

HASH_CHUNK_SIZE = 64 * 1024


@dataclass
class DependencyInputs:
    """Canonical representation of everything that affects the dependency cache.

    Application source is deliberately absent: editing the source never
    changes this key.
    """

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    toolchain: dict[str, Any] = field(default_factory=dict)
    manifest_files: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class ApplicationInputs:
    """Canonical representation of the application build inputs."""

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    manifest_key: str = ""
    source_hash: str = ""
    binary_name: str = ""
    toolchain: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def toolchain_identity(toolchain: ToolchainSchema) -> dict[str, Any]:
    """Return the toolchain fields that affect compiled output."""
    return {
        "name": toolchain.name,
        "builder_image": toolchain.builder_image,
        "build_command": list(toolchain.build_command),
        "target_dir_env": toolchain.target_dir_env,
        "output_subdir": toolchain.output_subdir,
    }


def hash_payload(payload: dict[str, Any]) -> str:
    """Hash a JSON-serializable payload into a ``sha256:`` key."""
    canonical_json = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def key_hex(key: str) -> str:
    """Strip the algorithm prefix from a key for use in paths."""
    return key.split(":", 1)[-1]


def create_dependency_inputs(
    manifest: DependencyManifest,
    toolchain: ToolchainSchema,
) -> DependencyInputs:
    """Create canonical dependency inputs from a manifest."""
    return DependencyInputs(
        toolchain=toolchain_identity(toolchain),
        manifest_files=dict(sorted(manifest.file_digests.items())),
    )


def compute_manifest_key(
    manifest: DependencyManifest,
    toolchain: ToolchainSchema,
) -> str:
    """Compute the dependency cache key from manifest content.

    Args:
        manifest: Loaded dependency manifest.
        toolchain: Toolchain definition.

    Returns:
        Cache key as ``sha256:<hex>``.
    """
    return hash_payload(create_dependency_inputs(manifest, toolchain).to_dict())


def hash_source_tree(project_dir: Path, source_dirs: list[str]) -> str:
    """Hash the application source tree.

    Relative paths and file contents are hashed in sorted order, so the
    result does not depend on filesystem iteration order or timestamps.

    Args:
        project_dir: Project root.
        source_dirs: Source directories relative to project_dir.

    Returns:
        Source hash as ``sha256:<hex>``.
    """
    sha256 = hashlib.sha256()
    for source_dir in sorted(source_dirs):
        root = project_dir / source_dir
        if not root.exists():
            continue
        for path in sorted(root.rglob("*")):
            if not path.is_file():
                continue
            rel = path.relative_to(project_dir).as_posix()
            sha256.update(rel.encode("utf-8"))
            sha256.update(b"\0")
            with path.open("rb") as f:
                while chunk := f.read(HASH_CHUNK_SIZE):
                    sha256.update(chunk)
            sha256.update(b"\0")
    return f"sha256:{sha256.hexdigest()}"


def compute_application_key(
    manifest_key: str,
    source_hash: str,
    toolchain: ToolchainSchema,
    binary_name: str,
) -> tuple[str, ApplicationInputs]:
    """Compute the application build key.

    Returns:
        Tuple of (key, ApplicationInputs).
    """
    inputs = ApplicationInputs(
        manifest_key=manifest_key,
        source_hash=source_hash,
        binary_name=binary_name,
        toolchain=toolchain_identity(toolchain),
    )
    return hash_payload(inputs.to_dict()), inputs


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "ApplicationInputs",
    "DependencyInputs",
    "compute_application_key",
    "compute_manifest_key",
    "create_dependency_inputs",
    "hash_payload",
    "hash_source_tree",
    "key_hex",
    "toolchain_identity",
]
