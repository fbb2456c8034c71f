"""Deployment state machine for the Harbormaster orchestrator.

The lifecycle of one deployment attempt is an explicit enum plus a pure
transition function. Each step of the orchestrator reports an outcome (OK or
FAILED); next_state() maps the current state and that outcome to the next
state, so the protocol can be tested without any infrastructure.

    INIT -> BACKUP -> PULLING -> PROMOTING -> VERIFYING
         -> COMMITTING -> MONITORING -> DONE -> SUCCEEDED

Failures before any mutation (BACKUP, PULLING) go straight to FAILED. Failures
after the runtime was touched (PROMOTING, VERIFYING, MONITORING) go through
ROLLING_BACK, which always ends in FAILED.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from harbormaster.errors import HarbormasterError
from harbormaster.logging import get_logger

logger = get_logger(__name__)


class DeploymentState(str, Enum):
    """States of one deployment attempt."""

    INIT = "init"
    BACKUP = "backup"
    PULLING = "pulling"
    PROMOTING = "promoting"
    VERIFYING = "verifying"
    COMMITTING = "committing"
    MONITORING = "monitoring"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepOutcome(str, Enum):
    """Outcome reported by the step executed in a state."""

    OK = "ok"
    FAILED = "failed"


class InvalidTransitionError(HarbormasterError):
    """Raised when no transition is defined for a state and outcome.

    Attributes:
        state: The current deployment state.
        outcome: The reported step outcome.
    """

    def __init__(self, state: DeploymentState, outcome: StepOutcome):
        self.state = state
        self.outcome = outcome
        super().__init__(f"No transition from {state.value} on outcome {outcome.value}")


# Authoritative transition table
TRANSITIONS: dict[tuple[DeploymentState, StepOutcome], DeploymentState] = {
    (DeploymentState.INIT, StepOutcome.OK): DeploymentState.BACKUP,
    (DeploymentState.BACKUP, StepOutcome.OK): DeploymentState.PULLING,
    (DeploymentState.BACKUP, StepOutcome.FAILED): DeploymentState.FAILED,
    (DeploymentState.PULLING, StepOutcome.OK): DeploymentState.PROMOTING,
    (DeploymentState.PULLING, StepOutcome.FAILED): DeploymentState.FAILED,
    (DeploymentState.PROMOTING, StepOutcome.OK): DeploymentState.VERIFYING,
    (DeploymentState.PROMOTING, StepOutcome.FAILED): DeploymentState.ROLLING_BACK,
    (DeploymentState.VERIFYING, StepOutcome.OK): DeploymentState.COMMITTING,
    (DeploymentState.VERIFYING, StepOutcome.FAILED): DeploymentState.ROLLING_BACK,
    (DeploymentState.COMMITTING, StepOutcome.OK): DeploymentState.MONITORING,
    # Metadata is best-effort; a failed write does not undo a healthy candidate
    (DeploymentState.COMMITTING, StepOutcome.FAILED): DeploymentState.MONITORING,
    (DeploymentState.MONITORING, StepOutcome.OK): DeploymentState.DONE,
    (DeploymentState.MONITORING, StepOutcome.FAILED): DeploymentState.ROLLING_BACK,
    (DeploymentState.DONE, StepOutcome.OK): DeploymentState.SUCCEEDED,
    (DeploymentState.DONE, StepOutcome.FAILED): DeploymentState.ROLLING_BACK,
    (DeploymentState.ROLLING_BACK, StepOutcome.OK): DeploymentState.FAILED,
    (DeploymentState.ROLLING_BACK, StepOutcome.FAILED): DeploymentState.FAILED,
}

TERMINAL_STATES: frozenset[DeploymentState] = frozenset(
    {DeploymentState.SUCCEEDED, DeploymentState.FAILED}
)


def next_state(state: DeploymentState, outcome: StepOutcome) -> DeploymentState:
    """Return the state that follows ``state`` when its step reports ``outcome``.

    Raises:
        InvalidTransitionError: If state is terminal or the pair is undefined.
    """
    try:
        return TRANSITIONS[(state, outcome)]
    except KeyError:
        raise InvalidTransitionError(state, outcome) from None


def is_terminal(state: DeploymentState) -> bool:
    return state in TERMINAL_STATES


class StateTransition(BaseModel):
    """One entry of a deployment's transition history.

    Attributes:
        state: State entered
        entered_at: Time the state was entered
    """

    state: DeploymentState = Field(description="State entered")
    entered_at: datetime = Field(description="Entry timestamp")


class DeploymentStateMachine:
    """Tracks the current state of one deployment and its history.

    Every transition is validated against TRANSITIONS and logged.
    """

    def __init__(self) -> None:
        self.state = DeploymentState.INIT
        self.history: list[StateTransition] = [
            StateTransition(state=self.state, entered_at=datetime.now(timezone.utc))
        ]
        self.logger = logger.bind(component="DeploymentStateMachine")

    def advance(self, outcome: StepOutcome) -> DeploymentState:
        """Apply a step outcome and enter the next state.

        Raises:
            InvalidTransitionError: If the transition is not defined.
        """
        previous = self.state
        self.state = next_state(previous, outcome)
        self.history.append(
            StateTransition(state=self.state, entered_at=datetime.now(timezone.utc))
        )
        self.logger.info(
            "deployment_transition",
            from_state=previous.value,
            to_state=self.state.value,
            outcome=outcome.value,
        )
        return self.state

    @property
    def finished(self) -> bool:
        return is_terminal(self.state)
