"""Tests for builds/runner.py module.

Runs real short-lived subprocesses through the Python interpreter.
"""

import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from stagedbuild.builds.runner import (
    ToolchainExecutionError,
    compose_environment,
    run_toolchain,
    tail_log,
)


class TestComposeEnvironment:
    """Tests for compose_environment."""

    def test_sets_target_dir(self, tmp_path: Path) -> None:
        """Output variable points at the stage-owned directory."""
        env = compose_environment("CARGO_TARGET_DIR", tmp_path)
        assert env["CARGO_TARGET_DIR"] == str(tmp_path)

    def test_override_cannot_replace_target_dir(self, tmp_path: Path) -> None:
        """The stage's output directory always wins."""
        env = compose_environment(
            "CARGO_TARGET_DIR",
            tmp_path,
            {"CARGO_TARGET_DIR": "/elsewhere", "EXTRA": "1"},
        )
        assert env["CARGO_TARGET_DIR"] == str(tmp_path)
        assert env["EXTRA"] == "1"


class TestRunToolchain:
    """Tests for run_toolchain."""

    def test_success_writes_log(self, tmp_path: Path) -> None:
        """Output and header/footer lines go to the log."""
        log_path = tmp_path / "logs" / "build.log"
        result = run_toolchain(
            command=[sys.executable, "-c", "import os; print(os.environ['OUT_DIR'])"],
            workspace=tmp_path,
            target_dir_env="OUT_DIR",
            target_dir=tmp_path / "target",
            log_path=log_path,
        )

        assert result.success
        assert result.exit_code == 0
        assert result.duration >= 0
        log = log_path.read_text()
        assert "# Command:" in log
        assert str(tmp_path / "target") in log
        assert "# Exit code: 0" in log
        assert (tmp_path / "target").is_dir()

    def test_failure_reports_exit_code(self, tmp_path: Path) -> None:
        """Non-zero exit is a failed result, not an exception."""
        result = run_toolchain(
            command=[sys.executable, "-c", "import sys; sys.exit(101)"],
            workspace=tmp_path,
            target_dir_env="OUT_DIR",
            target_dir=tmp_path / "target",
            log_path=tmp_path / "build.log",
        )
        assert not result.success
        assert result.exit_code == 101
        assert "101" in (result.error_message or "")

    def test_timeout(self, tmp_path: Path) -> None:
        """Timeouts raise with code build_timeout."""
        log_path = tmp_path / "build.log"
        with patch(
            "stagedbuild.builds.runner.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="cargo", timeout=1),
        ):
            with pytest.raises(ToolchainExecutionError) as exc_info:
                run_toolchain(
                    command=["cargo", "build"],
                    workspace=tmp_path,
                    target_dir_env="OUT_DIR",
                    target_dir=tmp_path / "target",
                    log_path=log_path,
                    timeout=1,
                )
        assert exc_info.value.code == "build_timeout"
        assert "TIMEOUT" in log_path.read_text()

    def test_missing_executable(self, tmp_path: Path) -> None:
        """A toolchain that cannot start raises execution_error."""
        with pytest.raises(ToolchainExecutionError) as exc_info:
            run_toolchain(
                command=[str(tmp_path / "no-such-cargo")],
                workspace=tmp_path,
                target_dir_env="OUT_DIR",
                target_dir=tmp_path / "target",
                log_path=tmp_path / "build.log",
            )
        assert exc_info.value.code == "execution_error"


class TestTailLog:
    """Tests for tail_log."""

    def test_last_lines(self, tmp_path: Path) -> None:
        """Only the last lines are returned."""
        log_path = tmp_path / "build.log"
        log_path.write_text("\n".join(f"line {i}" for i in range(50)))
        assert tail_log(log_path, lines=2) == "line 48\nline 49"

    def test_missing_log(self, tmp_path: Path) -> None:
        """Missing logs yield an empty string."""
        assert tail_log(tmp_path / "missing.log") == ""
