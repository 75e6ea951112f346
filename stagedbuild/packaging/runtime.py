"""Starting instances of packaged runtime images."""

from __future__ import annotations

import logging
import subprocess
import tarfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from stagedbuild.errors import PackagingError
from stagedbuild.packaging.image import LAYER_FILE, ImageInspection, inspect_image
from stagedbuild.pipeline.schema import ENV_NAME_PATTERN

logger = logging.getLogger(__name__)


@dataclass
class InstanceSpec:
    """How an instance of an image is started."""

    command: list[str]
    env: dict[str, str]
    ports: list[int]
    workdir: str


def parse_env_overrides(values: list[str] | None) -> dict[str, str]:
    """Parse NAME=VALUE strings into a dict.

    Raises:
        ValueError: If an entry is not NAME=VALUE or the name is invalid.
    """
    overrides: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not ENV_NAME_PATTERN.match(name):
            raise ValueError(f"Invalid environment override '{item}', expected NAME=VALUE")
        overrides[name] = value
    return overrides


def resolve_instance(
    inspection: ImageInspection,
    env_overrides: dict[str, str] | None = None,
) -> InstanceSpec:
    """Resolve the startup spec of an image with launch-time overrides.

    The command carries no arguments; overrides replace image defaults
    and may add new variables.
    """
    env = dict(inspection.env)
    for name, value in (env_overrides or {}).items():
        if name in env:
            logger.debug("Override %s=%s replaces image default %s", name, value, env[name])
        env[name] = value

    ports = [int(p.split("/", 1)[0]) for p in inspection.exposed_ports]
    return InstanceSpec(
        command=list(inspection.command),
        env=env,
        ports=ports,
        workdir=inspection.workdir,
    )


def _rootfs_path(rootfs_dir: Path, image_path: str) -> Path:
    return rootfs_dir / PurePosixPath(image_path).relative_to("/")


def extract_rootfs(bundle_dir: Path, rootfs_dir: Path) -> None:
    """Unpack an image layer into a root filesystem directory."""
    rootfs_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(bundle_dir / LAYER_FILE, "r") as tar:
            tar.extractall(rootfs_dir, filter="data")
    except (OSError, tarfile.TarError) as e:
        raise PackagingError(
            f"Failed to extract image layer from {bundle_dir}: {e}",
            code="image_bundle_invalid",
        ) from e


def launch_instance(
    bundle_dir: Path,
    rootfs_dir: Path,
    env_overrides: dict[str, str] | None = None,
) -> subprocess.Popen[bytes]:
    """Start an instance of an image bundle as a local process.

    The layer is unpacked into rootfs_dir and the image command is run
    from the image working directory with only the image environment
    (plus overrides), mirroring how a container would start.

    Args:
        bundle_dir: Runtime image bundle.
        rootfs_dir: Directory to unpack the image filesystem into.
        env_overrides: Launch-time environment overrides.

    Returns:
        The started process.
    """
    spec = resolve_instance(inspect_image(bundle_dir), env_overrides)
    extract_rootfs(bundle_dir, rootfs_dir)

    command = [str(_rootfs_path(rootfs_dir, spec.command[0])), *spec.command[1:]]
    cwd = _rootfs_path(rootfs_dir, spec.workdir)
    logger.info(
        "Starting %s (ports=%s, env=%s)",
        spec.command[0],
        ",".join(str(p) for p in spec.ports),
        ",".join(sorted(spec.env)),
    )
    try:
        return subprocess.Popen(command, cwd=cwd, env=spec.env)
    except OSError as e:
        raise PackagingError(
            f"Failed to start {spec.command[0]}: {e}", code="launch_failed"
        ) from e


__all__ = [
    "InstanceSpec",
    "extract_rootfs",
    "launch_instance",
    "parse_env_overrides",
    "resolve_instance",
]
