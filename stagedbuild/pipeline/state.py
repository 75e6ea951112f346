"""Pipeline state machine.

A run moves strictly forward:

    pending -> dependencies_built -> application_built -> image_packaged

Any non-terminal state may move to failed. Skip-ahead and backward
transitions are rejected.
"""

from stagedbuild.errors import InvalidTransitionError
from stagedbuild.types import PipelineState

TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.PENDING: frozenset(
        {PipelineState.DEPENDENCIES_BUILT, PipelineState.FAILED}
    ),
    PipelineState.DEPENDENCIES_BUILT: frozenset(
        {PipelineState.APPLICATION_BUILT, PipelineState.FAILED}
    ),
    PipelineState.APPLICATION_BUILT: frozenset(
        {PipelineState.IMAGE_PACKAGED, PipelineState.FAILED}
    ),
    PipelineState.IMAGE_PACKAGED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


def can_transition(current: PipelineState, target: PipelineState) -> bool:
    """Return True if the transition is allowed."""
    return target in TRANSITIONS[current]


def check_transition(current: PipelineState | str, target: PipelineState | str) -> None:
    """Validate a state transition.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    current_state = PipelineState(current)
    target_state = PipelineState(target)
    if not can_transition(current_state, target_state):
        raise InvalidTransitionError(current_state.value, target_state.value)


__all__ = [
    "TRANSITIONS",
    "can_transition",
    "check_transition",
]
