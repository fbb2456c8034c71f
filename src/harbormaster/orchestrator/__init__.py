"""Orchestrator subsystem for Harbormaster.

This module implements the deployment state machine, the promotion
strategies for single-container and compose deployments, the rollback
executor, and the orchestrator that sequences them.
"""

from __future__ import annotations

from harbormaster.orchestrator.deployer import DeploymentOrchestrator, DeploymentReport
from harbormaster.orchestrator.promotion import (
    ComposePromotion,
    ContainerPromotion,
    PromotionStrategy,
    StepResult,
)
from harbormaster.orchestrator.request import DeploymentRequest
from harbormaster.orchestrator.rollback import RollbackExecutor, RollbackResult
from harbormaster.orchestrator.state_machine import (
    DeploymentState,
    DeploymentStateMachine,
    InvalidTransitionError,
    StepOutcome,
    is_terminal,
    next_state,
)

__all__ = [
    "ComposePromotion",
    "ContainerPromotion",
    "DeploymentOrchestrator",
    "DeploymentReport",
    "DeploymentRequest",
    "DeploymentState",
    "DeploymentStateMachine",
    "InvalidTransitionError",
    "PromotionStrategy",
    "RollbackExecutor",
    "RollbackResult",
    "StepOutcome",
    "StepResult",
    "is_terminal",
    "next_state",
]
