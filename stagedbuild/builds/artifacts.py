"""Executable artifact storage.

This module handles:
- Locating the executable in the compiler output directory
- Copying it to a stable, content-keyed location
- Computing checksums and writing the build manifest
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from stagedbuild.types import ArtifactInfo

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024  # 64KB
EXECUTABLE_MODE = 0o755


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def locate_executable(target_dir: Path, output_subdir: str, binary_name: str) -> Path | None:
    """Return the compiled executable path if it exists.

    Args:
        target_dir: Compiler output directory.
        output_subdir: Subdirectory for the release profile.
        binary_name: Executable name.
    """
    candidate = target_dir / output_subdir / binary_name
    if candidate.is_file():
        return candidate
    logger.warning("Executable not found at %s", candidate)
    return None


def store_executable(source: Path, dest_dir: Path, binary_name: str) -> ArtifactInfo:
    """Copy an executable to its stable artifact location.

    Args:
        source: Compiled executable.
        dest_dir: Artifact directory for this build.
        binary_name: File name for the stored executable.

    Returns:
        ArtifactInfo describing the stored executable.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / binary_name
    tmp = dest.with_name(f".{binary_name}.tmp")
    shutil.copy2(source, tmp)
    tmp.chmod(EXECUTABLE_MODE)
    os.replace(tmp, dest)

    info = ArtifactInfo(
        filename=binary_name,
        path=str(dest),
        size_bytes=dest.stat().st_size,
        sha256=compute_file_hash(dest),
    )
    logger.info(
        "Stored executable %s (size=%d, sha256=%s)",
        dest,
        info.size_bytes,
        info.sha256[:16],
    )
    return info


def generate_manifest(
    artifact: ArtifactInfo,
    build_id: int | None = None,
    cache_key: str | None = None,
    manifest_key: str | None = None,
    build_inputs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest for an executable artifact."""
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "executable": {
            "filename": artifact.filename,
            "size_bytes": artifact.size_bytes,
            "sha256": artifact.sha256,
        },
    }
    if build_id is not None:
        manifest["build_id"] = build_id
    if cache_key:
        manifest["cache_key"] = cache_key
    if manifest_key:
        manifest["manifest_key"] = manifest_key
    if build_inputs:
        manifest["build_inputs"] = build_inputs
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write a manifest to a JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)
    logger.debug("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "EXECUTABLE_MODE",
    "HASH_CHUNK_SIZE",
    "compute_file_hash",
    "generate_manifest",
    "locate_executable",
    "store_executable",
    "write_manifest",
]
