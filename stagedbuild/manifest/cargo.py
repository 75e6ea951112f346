"""Cargo manifest and lockfile parsing.

Reads ``Cargo.toml`` for the package identity and declared dependencies,
and ``Cargo.lock`` for exact version pins. A manifest is accepted only when
every declared dependency is pinned in the lockfile.
"""

from __future__ import annotations

import hashlib
import logging
import tomllib
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stagedbuild.errors import (
    MALFORMED_MANIFEST,
    MISSING_MANIFEST,
    UNPINNED_MANIFEST,
    ManifestError,
)
from stagedbuild.manifest.models import DependencyManifest, DependencyPin

if TYPE_CHECKING:
    from stagedbuild.pipeline.schema import ToolchainSchema

logger = logging.getLogger(__name__)

DEPENDENCY_TABLES = ("dependencies", "build-dependencies")


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ManifestError(
            f"Malformed {path.name}: {e}", code=MALFORMED_MANIFEST
        ) from e
    except OSError as e:
        raise ManifestError(
            f"Cannot read {path.name}: {e}", code=MISSING_MANIFEST
        ) from e


def _declared_dependencies(data: dict[str, Any]) -> list[str]:
    """Collect declared dependency package names, honoring renames."""
    names: set[str] = set()
    for table in DEPENDENCY_TABLES:
        deps = data.get(table) or {}
        if not isinstance(deps, dict):
            raise ManifestError(
                f"[{table}] must be a table", code=MALFORMED_MANIFEST
            )
        for key, spec in deps.items():
            if isinstance(spec, dict):
                if spec.get("path") is not None:
                    # Local path dependencies are part of the source tree
                    continue
                names.add(str(spec.get("package", key)))
            else:
                names.add(key)
    return sorted(names)


def _parse_lock_packages(data: dict[str, Any], lock_name: str) -> list[dict[str, Any]]:
    packages = data.get("package")
    if packages is None:
        return []
    if not isinstance(packages, list):
        raise ManifestError(
            f"{lock_name}: [[package]] must be an array of tables",
            code=MALFORMED_MANIFEST,
        )
    return packages


def load_cargo_manifest(
    project_dir: Path,
    toolchain: ToolchainSchema,
) -> DependencyManifest:
    """Load and validate a Cargo manifest and lockfile.

    Args:
        project_dir: Project root containing the manifest files.
        toolchain: Toolchain definition naming the manifest files.

    Returns:
        Validated DependencyManifest.

    Raises:
        ManifestError: If the manifest is missing, malformed or unpinned.
    """
    manifest_name = next(
        (f for f in toolchain.manifest_files if f != toolchain.lockfile),
        "Cargo.toml",
    )
    manifest_path = project_dir / manifest_name
    lock_path = project_dir / toolchain.lockfile

    if not manifest_path.is_file():
        raise ManifestError(
            f"Dependency manifest not found: {manifest_path}",
            code=MISSING_MANIFEST,
        )

    data = _read_toml(manifest_path)
    package = data.get("package")
    if not isinstance(package, dict) or not package.get("name"):
        raise ManifestError(
            f"{manifest_name} has no [package] name", code=MALFORMED_MANIFEST
        )
    package_name = str(package["name"])
    package_version = package.get("version")
    if package_version is not None and not isinstance(package_version, str):
        # Workspace-inherited versions are tables
        package_version = None

    declared = _declared_dependencies(data)

    if not lock_path.is_file():
        raise ManifestError(
            f"Lockfile not found: {lock_path}; dependencies are not pinned",
            code=UNPINNED_MANIFEST,
        )

    lock_data = _read_toml(lock_path)
    pins: list[DependencyPin] = []
    for entry in _parse_lock_packages(lock_data, toolchain.lockfile):
        name = entry.get("name")
        version = entry.get("version")
        if not name:
            raise ManifestError(
                f"{toolchain.lockfile}: package entry without a name",
                code=MALFORMED_MANIFEST,
            )
        if not version:
            raise ManifestError(
                f"{toolchain.lockfile}: package '{name}' has no pinned version",
                code=UNPINNED_MANIFEST,
            )
        # The root package is locked without a source
        if name == package_name and entry.get("source") is None:
            continue
        pins.append(
            DependencyPin(
                name=str(name),
                version=str(version),
                source=entry.get("source"),
                checksum=entry.get("checksum"),
            )
        )

    pinned_names = {p.name for p in pins}
    missing = [name for name in declared if name not in pinned_names]
    if missing:
        raise ManifestError(
            f"Dependencies not pinned in {toolchain.lockfile}: {', '.join(missing)}",
            code=UNPINNED_MANIFEST,
        )

    file_digests: dict[str, str] = {}
    for name in toolchain.manifest_files:
        path = project_dir / name
        if not path.is_file():
            raise ManifestError(
                f"Manifest file not found: {path}", code=MISSING_MANIFEST
            )
        file_digests[name] = hashlib.sha256(path.read_bytes()).hexdigest()

    manifest = DependencyManifest(
        package_name=package_name,
        package_version=package_version,
        declared=tuple(declared),
        pins=tuple(sorted(pins, key=lambda p: (p.name, p.version))),
        file_digests=file_digests,
    )
    logger.info(
        "Loaded manifest for %s with %d pinned dependencies",
        package_name,
        len(manifest.pins),
    )
    return manifest


__all__ = ["DEPENDENCY_TABLES", "load_cargo_manifest"]
