"""Per-request pipeline state machine."""

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Upload pipeline states."""

    IDLE = "idle"
    RECEIVING = "receiving"
    VALIDATING = "validating"
    STREAMING = "streaming"
    REJECTED = "rejected"  # terminal
    ABORTED = "aborted"  # terminal
    FAILED = "failed"  # terminal
    COMPLETED = "completed"  # terminal


TERMINAL_STATES = frozenset(
    {
        PipelineState.REJECTED,
        PipelineState.ABORTED,
        PipelineState.FAILED,
        PipelineState.COMPLETED,
    }
)

ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.RECEIVING}),
    PipelineState.RECEIVING: frozenset(
        {PipelineState.VALIDATING, PipelineState.REJECTED, PipelineState.FAILED}
    ),
    PipelineState.VALIDATING: frozenset(
        {PipelineState.STREAMING, PipelineState.REJECTED, PipelineState.FAILED}
    ),
    PipelineState.STREAMING: frozenset(
        {PipelineState.ABORTED, PipelineState.FAILED, PipelineState.COMPLETED}
    ),
}


class InvalidTransition(RuntimeError):
    """Transition not allowed from the current state."""
    pass


class UploadStateMachine:
    """Single authority over one request's pipeline state.

    Once a terminal state is reached every further transition is refused,
    so a request can be resolved exactly once.
    """

    def __init__(self, request_id: str | None = None):
        self.request_id = request_id
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, target: PipelineState) -> bool:
        return target in ALLOWED_TRANSITIONS.get(self.state, frozenset())

    def transition(self, target: PipelineState) -> None:
        if not self.can_transition(target):
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        logger.debug(
            f"Pipeline state {self.state.value} -> {target.value}",
            extra={"request_id": self.request_id, "from_state": self.state.value, "to_state": target.value},
        )
        self.state = target
        self.history.append(target)

    def resolve(self, target: PipelineState) -> bool:
        """Move to a terminal state unless the request is already resolved.

        Returns:
            True if this call resolved the request
        """
        if target not in TERMINAL_STATES:
            raise ValueError(f"{target.value} is not a terminal state")
        if self.is_terminal:
            logger.warning(
                "Ignoring second resolution of upload pipeline",
                extra={"request_id": self.request_id, "state": self.state.value, "attempted": target.value},
            )
            return False
        self.transition(target)
        return True
