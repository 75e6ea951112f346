"""Toolchain runner for both build stages.

This module handles:
- Executing the toolchain's release build command with subprocess
- Pointing the compiler output directory at a stage-owned location
- Capturing stdout/stderr to log files
- Enforcing build timeouts
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class ToolchainExecutionError(Exception):
    """Raised when the toolchain cannot be run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "toolchain_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class ToolchainResult:
    """Result of a toolchain invocation.

    Attributes:
        success: Whether the command exited with code 0.
        exit_code: Process exit code.
        log_path: Path to the log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
        error_message: Error message if the command failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        return (self.finished_at - self.started_at).total_seconds()


def compose_environment(
    target_dir_env: str,
    target_dir: Path,
    env_override: dict[str, str] | None = None,
) -> dict[str, str]:
    """Compose the environment for a toolchain invocation.

    Args:
        target_dir_env: Variable naming the compiler output directory.
        target_dir: Stage-owned output directory.
        env_override: Optional additional variables.

    Returns:
        Environment mapping for subprocess.
    """
    env = dict(os.environ)
    if env_override:
        env.update(env_override)
    env[target_dir_env] = str(target_dir)
    return env


def run_toolchain(
    command: list[str],
    workspace: Path,
    target_dir_env: str,
    target_dir: Path,
    log_path: Path,
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
) -> ToolchainResult:
    """Run a release build in a workspace.

    Args:
        command: Build command as a list of strings.
        workspace: Working directory containing the manifest (and source).
        target_dir_env: Variable naming the compiler output directory.
        target_dir: Output directory for compiled artifacts.
        log_path: Log file (overwritten).
        timeout: Timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        ToolchainResult with execution details.

    Raises:
        ToolchainExecutionError: If the command times out or cannot start.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    target_dir.mkdir(parents=True, exist_ok=True)

    cmd_str = shlex.join(command)
    logger.info("Executing toolchain: %s", cmd_str)
    logger.debug("Working directory: %s", workspace)
    logger.debug("Output directory: %s", target_dir)

    env = compose_environment(target_dir_env, target_dir, env_override)
    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {workspace}\n")
            log_file.write(f"# {target_dir_env}: {target_dir}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                command,
                cwd=workspace,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"Toolchain failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"Toolchain timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise ToolchainExecutionError(
            error_message,
            exit_code=-1,
            code="build_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute toolchain: {e}"
        logger.error(error_message)
        raise ToolchainExecutionError(
            error_message,
            exit_code=None,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return ToolchainResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def tail_log(log_path: Path, lines: int = 20) -> str:
    """Return the last lines of a log file for error reporting."""
    if not log_path.exists():
        return ""
    content = log_path.read_text(errors="replace").splitlines()
    return "\n".join(content[-lines:])


__all__ = [
    "ToolchainExecutionError",
    "ToolchainResult",
    "compose_environment",
    "run_toolchain",
    "tail_log",
]
