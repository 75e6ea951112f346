"""Runtime image packaging.

This module handles:
- Writing a deterministic single-file layer holding only the executable
- Declaring the port, environment defaults and startup command in an
  OCI-style image config
- Checking the minimal-surface invariant on the finished layer
- Recording and inspecting image bundles

A bundle directory holds ``layer.tar``, ``config.json``, ``manifest.json``
and a ``Containerfile`` that reproduces the same image on top of the base
image with an external builder.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import shutil
import tarfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from stagedbuild.builds.artifacts import compute_file_hash
from stagedbuild.builds.models import ApplicationBuild, RuntimeImage
from stagedbuild.builds.service import find_runtime_image
from stagedbuild.config import get_settings
from stagedbuild.errors import EXECUTABLE_NOT_FOUND, PACKAGING_FAILED, PackagingError
from stagedbuild.manifest.cache_key import key_hex
from stagedbuild.pipeline.schema import KNOWN_LOG_LEVELS

if TYPE_CHECKING:
    from stagedbuild.config import Settings
    from stagedbuild.pipeline.schema import PipelineSchema, RuntimeImageSchema

logger = logging.getLogger(__name__)

LAYER_FILE = "layer.tar"
CONFIG_FILE = "config.json"
MANIFEST_FILE = "manifest.json"
CONTAINERFILE = "Containerfile"

# Fixed metadata so identical executables produce identical layers
LAYER_MTIME = 0
DIR_MODE = 0o755
EXECUTABLE_MODE = 0o755

LABEL_PREFIX = "org.stagedbuild"


@dataclass
class ImageInspection:
    """What a runtime image bundle contains and declares."""

    digest: str
    bundle_dir: str
    base_image: str
    files: list[str]
    exposed_ports: list[str]
    env: dict[str, str]
    command: list[str]
    workdir: str
    labels: dict[str, str] = field(default_factory=dict)


def _hash_bytes(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def expected_layer_members(runtime: RuntimeImageSchema) -> list[str]:
    """Return the exact member names a layer may contain.

    These are the parent directories of the executable followed by the
    executable itself.
    """
    exe = PurePosixPath(runtime.executable_relpath())
    parents = [p.as_posix() for p in reversed(exe.parents) if p.as_posix() != "."]
    return [*parents, exe.as_posix()]


def _dir_info(name: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = DIR_MODE
    info.mtime = LAYER_MTIME
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def write_layer(executable: Path, runtime: RuntimeImageSchema, layer_path: Path) -> None:
    """Write a layer tarball holding only the executable.

    Args:
        executable: Executable artifact to copy into the image.
        runtime: Runtime image definition.
        layer_path: Output tarball path.
    """
    members = expected_layer_members(runtime)
    with tarfile.open(layer_path, "w", format=tarfile.USTAR_FORMAT) as tar:
        for name in members[:-1]:
            tar.addfile(_dir_info(name))

        data = executable.read_bytes()
        info = tarfile.TarInfo(members[-1])
        info.size = len(data)
        info.mode = EXECUTABLE_MODE
        info.mtime = LAYER_MTIME
        info.uid = info.gid = 0
        info.uname = info.gname = "root"
        tar.addfile(info, io.BytesIO(data))


def list_layer_members(layer_path: Path) -> list[str]:
    """Return the member names of a layer tarball."""
    with tarfile.open(layer_path, "r") as tar:
        return [m.name.rstrip("/") for m in tar.getmembers()]


def verify_layer(layer_path: Path, runtime: RuntimeImageSchema) -> None:
    """Check a layer holds exactly the executable and its directories.

    Raises:
        PackagingError: If anything else (source, cache, toolchain files)
            is present, or the executable is missing.
    """
    expected = expected_layer_members(runtime)
    actual = list_layer_members(layer_path)
    if sorted(actual) != sorted(expected):
        extra = sorted(set(actual) - set(expected))
        missing = sorted(set(expected) - set(actual))
        raise PackagingError(
            f"Layer content violates the minimal image contract "
            f"(unexpected={extra}, missing={missing})",
            code="unexpected_layer_content",
        )
    with tarfile.open(layer_path, "r") as tar:
        exe = tar.getmember(expected[-1])
        if not exe.isfile() or not exe.mode & 0o111:
            raise PackagingError(
                f"{expected[-1]} in layer is not an executable file",
                code="unexpected_layer_content",
            )


def check_log_level(runtime: RuntimeImageSchema, value: str | None = None) -> bool:
    """Report whether a log verbosity value starts with a known level.

    The service owns the accepted set; unknown values are only warned about.
    """
    value = runtime.log_level if value is None else value
    first = value.split(",", 1)[0].strip()
    level = first.rsplit("=", 1)[-1].lower()
    if level not in KNOWN_LOG_LEVELS:
        logger.warning(
            "%s=%s does not start with a known level (%s)",
            runtime.log_env_var,
            value,
            ", ".join(sorted(KNOWN_LOG_LEVELS)),
        )
        return False
    return True


def build_image_config(
    runtime: RuntimeImageSchema,
    diff_id: str,
    labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build the OCI-style image config.

    Args:
        runtime: Runtime image definition.
        diff_id: Digest of the uncompressed layer.
        labels: Extra image labels.

    Returns:
        Image config dictionary.
    """
    env = runtime.default_env()
    all_labels = {f"{LABEL_PREFIX}.base-image": runtime.base_image}
    if labels:
        all_labels.update(labels)
    return {
        "architecture": runtime.architecture,
        "os": "linux",
        "config": {
            "Env": [f"{k}={v}" for k, v in sorted(env.items())],
            "ExposedPorts": {f"{runtime.port}/tcp": {}},
            "Cmd": [runtime.executable_path],
            "WorkingDir": runtime.workdir,
            "Labels": dict(sorted(all_labels.items())),
        },
        "rootfs": {"type": "layers", "diff_ids": [diff_id]},
    }


def render_containerfile(runtime: RuntimeImageSchema) -> str:
    """Render the image declaration as a Containerfile."""
    lines = [
        f"FROM {runtime.base_image}",
        f"WORKDIR {runtime.workdir}",
        f"ADD {LAYER_FILE} /",
        f"EXPOSE {runtime.port}",
    ]
    for name, value in sorted(runtime.default_env().items()):
        lines.append(f"ENV {name}={json.dumps(value)}")
    lines.append(f"CMD {json.dumps([runtime.executable_path])}")
    return "\n".join(lines) + "\n"


def _canonical_json(data: dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _write_bundle(
    staging: Path,
    executable: Path,
    runtime: RuntimeImageSchema,
    labels: dict[str, str],
) -> tuple[str, int]:
    layer_path = staging / LAYER_FILE
    write_layer(executable, runtime, layer_path)
    verify_layer(layer_path, runtime)

    diff_id = f"sha256:{compute_file_hash(layer_path)}"
    layer_size = layer_path.stat().st_size
    config_bytes = _canonical_json(build_image_config(runtime, diff_id, labels))
    digest = _hash_bytes(config_bytes)
    (staging / CONFIG_FILE).write_bytes(config_bytes)

    manifest = {
        "schemaVersion": 2,
        "config": {"digest": digest, "size": len(config_bytes)},
        "layers": [{"digest": diff_id, "size": layer_size}],
        "base_image": runtime.base_image,
    }
    (staging / MANIFEST_FILE).write_text(
        json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8"
    )
    (staging / CONTAINERFILE).write_text(render_containerfile(runtime), encoding="utf-8")
    return digest, layer_size


def package_runtime_image(
    session: Session,
    application_build: ApplicationBuild,
    pipeline: PipelineSchema,
    settings: Settings | None = None,
) -> tuple[RuntimeImage, bool]:
    """Package an executable artifact into a runtime image bundle.

    Only the executable crosses into the image. The bundle is written to
    a staging directory and moved into place once complete.

    Args:
        session: Database session.
        application_build: Succeeded build carrying the executable.
        pipeline: Pipeline definition.
        settings: Application settings.

    Returns:
        Tuple of (RuntimeImage, is_cache_hit).

    Raises:
        PackagingError: If the executable is missing or packaging fails.
    """
    if settings is None:
        settings = get_settings()

    runtime = pipeline.runtime
    if not application_build.executable_path:
        raise PackagingError(
            f"Build {application_build.id} has no executable artifact",
            code=EXECUTABLE_NOT_FOUND,
        )
    executable = Path(application_build.executable_path)
    if not executable.is_file():
        raise PackagingError(
            f"Executable artifact not found: {executable}",
            code=EXECUTABLE_NOT_FOUND,
        )

    check_log_level(runtime)

    labels = {f"{LABEL_PREFIX}.build-key": application_build.cache_key}
    if application_build.dependency_cache is not None:
        labels[f"{LABEL_PREFIX}.manifest-key"] = (
            application_build.dependency_cache.manifest_key
        )

    settings.images_dir.mkdir(parents=True, exist_ok=True)
    staging = settings.images_dir / f".staging-{uuid.uuid4().hex[:12]}"
    staging.mkdir()
    try:
        digest, layer_size = _write_bundle(staging, executable, runtime, labels)

        existing = find_runtime_image(session, digest)
        if existing is not None and existing.is_intact():
            logger.info("Runtime image %s already packaged", digest[:23])
            return existing, True

        bundle_dir = settings.images_dir / key_hex(digest)
        if bundle_dir.exists():
            shutil.rmtree(bundle_dir)
        os.replace(staging, bundle_dir)
    except PackagingError:
        raise
    except OSError as e:
        raise PackagingError(
            f"Failed to write image bundle: {e}", code=PACKAGING_FAILED
        ) from e
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    if existing is None:
        existing = RuntimeImage(digest=digest, application_build_id=application_build.id)
        session.add(existing)
    existing.application_build_id = application_build.id
    existing.bundle_dir = str(bundle_dir)
    existing.base_image = runtime.base_image
    existing.port = runtime.port
    existing.env = runtime.default_env()
    existing.command = [runtime.executable_path]
    existing.layer_size_bytes = layer_size
    session.flush()

    logger.info(
        "Packaged runtime image %s (%d byte layer) at %s",
        digest[:23],
        layer_size,
        bundle_dir,
    )
    return existing, False


def inspect_image(bundle_dir: Path) -> ImageInspection:
    """Read what an image bundle contains and declares.

    Raises:
        PackagingError: If the bundle is incomplete or unreadable.
    """
    config_path = bundle_dir / CONFIG_FILE
    layer_path = bundle_dir / LAYER_FILE
    if not config_path.is_file() or not layer_path.is_file():
        raise PackagingError(
            f"Incomplete image bundle: {bundle_dir}", code="image_bundle_incomplete"
        )
    try:
        config_bytes = config_path.read_bytes()
        data = json.loads(config_bytes)
        files = list_layer_members(layer_path)
    except (OSError, ValueError, tarfile.TarError) as e:
        raise PackagingError(
            f"Unreadable image bundle {bundle_dir}: {e}", code="image_bundle_invalid"
        ) from e

    config = data.get("config", {})
    env: dict[str, str] = {}
    for entry in config.get("Env", []):
        name, _, value = entry.partition("=")
        env[name] = value
    labels = dict(config.get("Labels") or {})

    return ImageInspection(
        digest=_hash_bytes(config_bytes),
        bundle_dir=str(bundle_dir),
        base_image=labels.get(f"{LABEL_PREFIX}.base-image", ""),
        files=files,
        exposed_ports=sorted(config.get("ExposedPorts", {})),
        env=env,
        command=list(config.get("Cmd", [])),
        workdir=config.get("WorkingDir", "/"),
        labels=labels,
    )


__all__ = [
    "CONFIG_FILE",
    "CONTAINERFILE",
    "LAYER_FILE",
    "MANIFEST_FILE",
    "ImageInspection",
    "build_image_config",
    "check_log_level",
    "expected_layer_members",
    "inspect_image",
    "list_layer_members",
    "package_runtime_image",
    "render_containerfile",
    "verify_layer",
    "write_layer",
]
