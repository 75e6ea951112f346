"""Build workspace staging.

This module handles:
- Creating private, throwaway workspaces for each build stage
- Staging manifest files and the application source tree
- Writing and removing the placeholder program
- Clearing the placeholder's own compiled outputs from a dependency cache

A workspace never outlives its stage; only the dependency cache store and
the executable artifact survive a build.
"""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stagedbuild.pipeline.schema import ToolchainSchema

logger = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """Raised when workspace staging fails."""

    def __init__(self, message: str, code: str = "workspace_error") -> None:
        super().__init__(message)
        self.code = code


def create_workspace(prefix: str, tmp_dir: Path | None = None) -> Path:
    """Create an empty workspace directory.

    Args:
        prefix: Directory name prefix.
        tmp_dir: Parent directory (system default if None).

    Returns:
        Path to the new workspace.
    """
    if tmp_dir is not None:
        tmp_dir.mkdir(parents=True, exist_ok=True)
    workspace = Path(tempfile.mkdtemp(prefix=prefix, dir=tmp_dir))
    logger.debug("Created workspace %s", workspace)
    return workspace


def discard_workspace(workspace: Path, keep: bool = False) -> None:
    """Remove a workspace unless asked to keep it."""
    if keep:
        logger.info("Keeping workspace %s", workspace)
        return
    if workspace.exists():
        shutil.rmtree(workspace, ignore_errors=True)
        logger.debug("Discarded workspace %s", workspace)


def stage_manifest_files(
    project_dir: Path,
    workspace: Path,
    toolchain: ToolchainSchema,
) -> list[Path]:
    """Copy only the manifest files into a workspace.

    Raises:
        WorkspaceError: If a manifest file cannot be copied.
    """
    staged: list[Path] = []
    for name in toolchain.manifest_files:
        source = project_dir / name
        dest = workspace / name
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as e:
            raise WorkspaceError(
                f"Failed to stage manifest file {source}: {e}",
                code="manifest_stage_error",
            ) from e
        staged.append(dest)
    return staged


def write_placeholder(workspace: Path, toolchain: ToolchainSchema) -> list[Path]:
    """Write the placeholder program into a workspace.

    The placeholder only satisfies the toolchain's need for an entry
    point so that dependencies can be compiled before real source exists.

    Returns:
        Paths of the written placeholder files.

    Raises:
        WorkspaceError: If a placeholder file cannot be written.
    """
    written: list[Path] = []
    for rel_path, content in toolchain.placeholder_files.items():
        path = workspace / rel_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise WorkspaceError(
                f"Failed to write placeholder file {path}: {e}",
                code="placeholder_write_error",
            ) from e
        written.append(path)
    logger.debug("Wrote %d placeholder file(s)", len(written))
    return written


def remove_placeholder(workspace: Path, toolchain: ToolchainSchema) -> None:
    """Remove the placeholder program and any source dirs it created."""
    for rel_path in toolchain.placeholder_files:
        path = workspace / rel_path
        if path.exists():
            path.unlink()
    for source_dir in toolchain.source_dirs:
        path = workspace / source_dir
        if path.exists():
            shutil.rmtree(path)


def purge_package_outputs(
    target_dir: Path,
    output_subdir: str,
    package_name: str,
    binary_name: str,
) -> list[Path]:
    """Delete the root package's own compiled outputs from a target dir.

    After a pre-build the target dir holds the compiled placeholder next
    to the dependencies. Left in place, its fingerprint would let the
    toolchain treat the real application as already built. Only entries
    named exactly after the package (``<name>-<16 hex>``) are removed, so
    dependencies sharing a name prefix are kept.

    Returns:
        Paths that were removed.
    """
    out_dir = target_dir / output_subdir
    if not out_dir.is_dir():
        return []

    crate = package_name.replace("-", "_")
    hashed = re.compile(
        rf"^(lib)?({re.escape(package_name)}|{re.escape(crate)})-[0-9a-f]{{16}}(\..+)?$"
    )

    candidates = [out_dir / binary_name, out_dir / f"{binary_name}.d"]
    for sub in (".fingerprint", "deps", "incremental"):
        parent = out_dir / sub
        if parent.is_dir():
            candidates += [p for p in parent.iterdir() if hashed.match(p.name)]

    removed: list[Path] = []
    for path in candidates:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
        else:
            continue
        removed.append(path)
    logger.debug("Purged %d placeholder output(s) from %s", len(removed), out_dir)
    return removed


def _copy_tree(source_dir: Path, dest_dir: Path) -> None:
    source_root = source_dir.resolve()
    for item in sorted(source_dir.rglob("*")):
        rel_path = item.relative_to(source_dir)
        dest_path = dest_dir / rel_path

        if item.is_symlink():
            target = item.resolve()
            try:
                target.relative_to(source_root)
            except ValueError:
                raise WorkspaceError(
                    f"Symlink {item} points outside source tree: {target}",
                    code="symlink_escape",
                ) from None

        if item.is_dir():
            dest_path.mkdir(parents=True, exist_ok=True)
        elif item.is_file():
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            # Staged source must be newer than anything in the dependency cache
            shutil.copy(item.resolve(), dest_path)


def stage_source_tree(
    project_dir: Path,
    workspace: Path,
    source_dirs: list[str],
) -> None:
    """Copy the application source tree into a workspace.

    Copies carry the time of staging as their mtime, not the original's.

    Raises:
        WorkspaceError: If a source directory is missing or cannot be copied.
    """
    for source_dir in source_dirs:
        source = project_dir / source_dir
        if not source.is_dir():
            raise WorkspaceError(
                f"Source directory not found: {source}",
                code="source_not_found",
            )
        try:
            _copy_tree(source, workspace / source_dir)
        except OSError as e:
            raise WorkspaceError(
                f"Failed to stage source directory {source}: {e}",
                code="source_stage_error",
            ) from e


def copy_cache_target(cache_target: Path, workspace_target: Path) -> None:
    """Copy a dependency cache's compiled output into a workspace.

    The cache itself is only read; the application build links against
    its own copy so the cache is never mutated after the pre-build.
    """
    try:
        shutil.copytree(cache_target, workspace_target, symlinks=True)
    except OSError as e:
        raise WorkspaceError(
            f"Failed to copy dependency cache {cache_target}: {e}",
            code="cache_copy_error",
        ) from e


__all__ = [
    "WorkspaceError",
    "copy_cache_target",
    "create_workspace",
    "discard_workspace",
    "purge_package_outputs",
    "remove_placeholder",
    "stage_manifest_files",
    "stage_source_tree",
    "write_placeholder",
]
