"""Pydantic models for pipeline definitions.

A pipeline definition describes how a project is compiled (the toolchain)
and how its executable is packaged (the runtime image). All defaults
reproduce a cargo release build packaged onto a distroless base image.
"""

import platform
import re
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Levels understood by the packaged service; not enforced, only reported
KNOWN_LOG_LEVELS = frozenset({"error", "warn", "info", "debug", "trace"})

# platform.machine() values mapped to OCI architecture names
OCI_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "i386": "386",
    "i686": "386",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


def host_architecture() -> str:
    """Return the OCI architecture name of the build host."""
    machine = platform.machine().lower()
    return OCI_ARCHITECTURES.get(machine, machine)


def _default_placeholder_files() -> dict[str, str]:
    return {"src/main.rs": "fn main(){}\n"}


class ToolchainSchema(BaseModel):
    """Schema for the compiler toolchain used by both build stages.

    Attributes:
        name: Toolchain name (informational).
        builder_image: Builder environment identity, part of the cache key.
        build_command: Command that compiles the project in release mode.
        manifest_files: Files that make up the dependency manifest.
        manifest_format: Parser used to read the manifest.
        lockfile: The manifest file holding exact version pins.
        source_dirs: Directories that make up the application source tree.
        placeholder_files: Stand-in program written during the pre-build.
        target_dir_env: Environment variable naming the compiler output dir.
        output_subdir: Subdirectory of the output dir holding the executable.
        binary_name: Executable name (defaults to the manifest package name).
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="cargo", description="Toolchain name")
    builder_image: str = Field(
        default="rust:1.80", description="Builder environment identity"
    )
    build_command: list[str] = Field(
        default_factory=lambda: ["cargo", "build", "--release"],
        description="Release build command",
    )
    manifest_files: list[str] = Field(
        default_factory=lambda: ["Cargo.toml", "Cargo.lock"],
        description="Dependency manifest files",
    )
    manifest_format: str = Field(default="cargo", description="Manifest parser")
    lockfile: str = Field(default="Cargo.lock", description="Version lockfile")
    source_dirs: list[str] = Field(
        default_factory=lambda: ["src"], description="Application source dirs"
    )
    placeholder_files: dict[str, str] = Field(
        default_factory=_default_placeholder_files,
        description="Placeholder program used to compile dependencies",
    )
    target_dir_env: str = Field(
        default="CARGO_TARGET_DIR", description="Output directory variable"
    )
    output_subdir: str = Field(default="release", description="Output subdirectory")
    binary_name: str | None = Field(default=None, description="Executable name")

    @field_validator("build_command", "manifest_files", "source_dirs")
    @classmethod
    def validate_non_empty(cls, v: list[str]) -> list[str]:
        """Validate list fields are non-empty."""
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("manifest_files", "source_dirs")
    @classmethod
    def validate_relative_paths(cls, v: list[str]) -> list[str]:
        """Validate paths are relative and stay inside the project."""
        for item in v:
            _check_relative(item)
        return v

    @field_validator("placeholder_files")
    @classmethod
    def validate_placeholder_files(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate placeholder paths are relative and non-escaping."""
        if not v:
            raise ValueError("at least one placeholder file is required")
        for path in v:
            _check_relative(path)
        return v

    @field_validator("target_dir_env")
    @classmethod
    def validate_target_dir_env(cls, v: str) -> str:
        """Validate the output variable is a valid environment name."""
        if not ENV_NAME_PATTERN.match(v):
            raise ValueError(f"invalid environment variable name: '{v}'")
        return v

    @model_validator(mode="after")
    def validate_lockfile_listed(self) -> "ToolchainSchema":
        """Validate the lockfile is one of the manifest files."""
        if self.lockfile not in self.manifest_files:
            raise ValueError(
                f"lockfile '{self.lockfile}' must be listed in manifest_files"
            )
        return self


class RuntimeImageSchema(BaseModel):
    """Schema for the minimal runtime image.

    Attributes:
        base_image: Minimal base image with no shell or package manager.
        workdir: Working directory inside the image.
        executable_path: Where the executable is placed in the image.
        port: The single TCP port the service listens on.
        log_env_var: Environment variable holding log verbosity.
        log_level: Default log verbosity.
        env: Additional default environment values.
        architecture: OCI architecture of the executable; defaults to the
            build host, where the executable is compiled.
    """

    model_config = ConfigDict(extra="forbid")

    base_image: str = Field(default="gcr.io/distroless/cc-debian12")
    workdir: str = Field(default="/app")
    executable_path: str = Field(default="/app/app")
    port: int = Field(default=8000, ge=1, le=65535)
    log_env_var: str = Field(default="RUST_LOG")
    log_level: str = Field(default="info")
    env: dict[str, str] = Field(default_factory=dict)
    architecture: str = Field(default_factory=host_architecture)

    @field_validator("workdir", "executable_path")
    @classmethod
    def validate_absolute(cls, v: str) -> str:
        """Validate image paths are absolute."""
        if not v.startswith("/"):
            raise ValueError("must be an absolute path starting with '/'")
        return v

    @field_validator("log_env_var")
    @classmethod
    def validate_log_env_var(cls, v: str) -> str:
        """Validate the log variable is a valid environment name."""
        if not ENV_NAME_PATTERN.match(v):
            raise ValueError(f"invalid environment variable name: '{v}'")
        return v

    @field_validator("architecture")
    @classmethod
    def validate_architecture(cls, v: str) -> str:
        """Validate the architecture is a known OCI name."""
        if v not in set(OCI_ARCHITECTURES.values()):
            raise ValueError(f"unknown architecture: '{v}'")
        return v

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate environment variable names."""
        for name in v:
            if not ENV_NAME_PATTERN.match(name):
                raise ValueError(f"invalid environment variable name: '{name}'")
        return v

    @model_validator(mode="after")
    def validate_executable_in_workdir(self) -> "RuntimeImageSchema":
        """Validate the executable lives under the working directory."""
        exe = PurePosixPath(self.executable_path)
        workdir = PurePosixPath(self.workdir)
        if workdir not in exe.parents:
            raise ValueError(
                f"executable_path '{self.executable_path}' must be inside "
                f"workdir '{self.workdir}'"
            )
        return self

    def default_env(self) -> dict[str, str]:
        """Return the default environment declared by the image.

        The log variable is always present; extra env entries may not
        override it.
        """
        env = {k: v for k, v in self.env.items() if k != self.log_env_var}
        env[self.log_env_var] = self.log_level
        return env

    def executable_relpath(self) -> str:
        """Return the executable path relative to the image root."""
        return self.executable_path.lstrip("/")


class PipelineSchema(BaseModel):
    """Complete pipeline definition."""

    model_config = ConfigDict(extra="forbid")

    toolchain: ToolchainSchema = Field(default_factory=ToolchainSchema)
    runtime: RuntimeImageSchema = Field(default_factory=RuntimeImageSchema)


def _check_relative(path: str) -> None:
    pure = PurePosixPath(path)
    if pure.is_absolute() or ".." in pure.parts or not pure.parts:
        raise ValueError(f"path must be relative and inside the project: '{path}'")


__all__ = [
    "ENV_NAME_PATTERN",
    "KNOWN_LOG_LEVELS",
    "PipelineSchema",
    "RuntimeImageSchema",
    "ToolchainSchema",
]
