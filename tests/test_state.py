"""Tests for the pipeline state machine."""

import pytest

from stagedbuild.builds.models import PipelineRun
from stagedbuild.errors import InvalidTransitionError
from stagedbuild.pipeline.state import can_transition, check_transition
from stagedbuild.types import PipelineState


class TestTransitions:
    """Tests for check_transition."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (PipelineState.PENDING, PipelineState.DEPENDENCIES_BUILT),
            (PipelineState.DEPENDENCIES_BUILT, PipelineState.APPLICATION_BUILT),
            (PipelineState.APPLICATION_BUILT, PipelineState.IMAGE_PACKAGED),
            (PipelineState.PENDING, PipelineState.FAILED),
            (PipelineState.DEPENDENCIES_BUILT, PipelineState.FAILED),
            (PipelineState.APPLICATION_BUILT, PipelineState.FAILED),
        ],
    )
    def test_allowed(self, current: PipelineState, target: PipelineState) -> None:
        """Forward steps and failure are allowed."""
        assert can_transition(current, target)
        check_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (PipelineState.PENDING, PipelineState.APPLICATION_BUILT),
            (PipelineState.PENDING, PipelineState.IMAGE_PACKAGED),
            (PipelineState.DEPENDENCIES_BUILT, PipelineState.IMAGE_PACKAGED),
            (PipelineState.APPLICATION_BUILT, PipelineState.DEPENDENCIES_BUILT),
            (PipelineState.IMAGE_PACKAGED, PipelineState.FAILED),
            (PipelineState.FAILED, PipelineState.PENDING),
        ],
    )
    def test_rejected(self, current: PipelineState, target: PipelineState) -> None:
        """Skip-ahead, backward and post-terminal steps are rejected."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition(current, target)
        assert exc_info.value.code == "invalid_transition"
        assert exc_info.value.current == current.value
        assert exc_info.value.target == target.value

    def test_accepts_strings(self) -> None:
        """Stored string states are accepted."""
        check_transition("pending", "dependencies_built")


class TestPipelineRunModel:
    """Tests for PipelineRun.advance and fail."""

    def test_advance_requires_dependency_cache(self, session) -> None:
        """A run cannot claim built dependencies without a cache."""
        run = PipelineRun(project_dir="/tmp/p", state=PipelineState.PENDING.value)
        session.add(run)
        session.flush()

        with pytest.raises(InvalidTransitionError, match="dependency cache"):
            run.advance(PipelineState.DEPENDENCIES_BUILT)
        assert run.state == "pending"

    def test_skip_ahead_rejected(self, session) -> None:
        """Skipping a stage is rejected before preconditions are checked."""
        run = PipelineRun(project_dir="/tmp/p", state=PipelineState.PENDING.value)
        session.add(run)
        session.flush()

        with pytest.raises(InvalidTransitionError):
            run.advance(PipelineState.IMAGE_PACKAGED)

    def test_fail_records_error(self, session) -> None:
        """Failing a run records stage and error details."""
        run = PipelineRun(project_dir="/tmp/p", state=PipelineState.PENDING.value)
        session.add(run)
        session.flush()

        run.fail("unpinned_manifest", "libfoo is not pinned", stage="manifest")

        assert run.state == "failed"
        assert run.error_type == "unpinned_manifest"
        assert run.error_stage == "manifest"
        assert run.finished_at is not None
        assert not run.is_complete()

    def test_fail_twice_rejected(self, session) -> None:
        """A failed run is terminal."""
        run = PipelineRun(project_dir="/tmp/p", state=PipelineState.FAILED.value)
        session.add(run)
        session.flush()

        with pytest.raises(InvalidTransitionError):
            run.fail("x", "y")
