"""Deployment orchestrator: drive one deployment through the state machine.

The orchestrator is single-threaded and blocking. Each state's step runs to
completion (including every retry and monitoring wait) before the next state
is entered; the step's outcome is fed to the pure transition function and the
loop continues until SUCCEEDED or FAILED.

Example usage:
    >>> from harbormaster.orchestrator import DeploymentOrchestrator, DeploymentRequest
    >>>
    >>> request = DeploymentRequest(
    ...     environment="staging",
    ...     image="ghcr.io/acme/todos:1.4.0",
    ...     container_name="todos-staging",
    ...     port_mapping="8081:8080",
    ...     deploy_path=Path("/opt/todos-staging"),
    ... )
    >>> report = orchestrator.run(request)
    >>> report.succeeded
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable

from pydantic import BaseModel, Field

from harbormaster.config import HarbormasterConfig
from harbormaster.errors import BackupError, RollbackExhaustedError
from harbormaster.logging import bind_deployment_context, get_logger, set_deployment_id
from harbormaster.orchestrator.promotion import PromotionStrategy
from harbormaster.orchestrator.request import DeploymentRequest
from harbormaster.orchestrator.rollback import RollbackResult
from harbormaster.orchestrator.state_machine import (
    DeploymentState,
    DeploymentStateMachine,
    StateTransition,
    StepOutcome,
)
from harbormaster.pipeline.backup import BackupHandle, BackupManager
from harbormaster.pipeline.health import (
    ExtendedMonitor,
    HealthVerifier,
    MonitorResult,
    VerificationResult,
)
from harbormaster.pipeline.metadata import write_metadata

ProgressCallback = Callable[[DeploymentState, str], None]


class DeploymentReport(BaseModel):
    """Outcome of one deployment attempt.

    Attributes:
        deployment_id: Identifier attached to every log event of the attempt
        request: The deployment request
        final_state: SUCCEEDED or FAILED
        history: States entered, in order, with timestamps
        backup: Snapshot taken before promotion
        instance: Name the new instance was started under
        verification: Health Verifier outcome
        monitor: Extended Monitor outcome (None when skipped)
        rollback: Rollback outcome (None when no rollback ran)
        failure_reason: Why the attempt failed
        rollback_exhausted: No previous instance was available to roll back to
        duration_seconds: Wall-clock duration of the attempt
    """

    deployment_id: str = Field(description="Deployment identifier")
    request: DeploymentRequest = Field(description="Deployment request")
    final_state: DeploymentState = Field(default=DeploymentState.INIT, description="Final state")
    history: list[StateTransition] = Field(default_factory=list, description="States entered")
    backup: BackupHandle = Field(default_factory=BackupHandle.none, description="Snapshot")
    instance: str | None = Field(default=None, description="New instance name")
    verification: VerificationResult | None = Field(default=None, description="Verification")
    monitor: MonitorResult | None = Field(default=None, description="Monitoring")
    rollback: RollbackResult | None = Field(default=None, description="Rollback")
    failure_reason: str | None = Field(default=None, description="Failure reason")
    rollback_exhausted: bool = Field(default=False, description="Rollback exhausted")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Duration")

    @property
    def succeeded(self) -> bool:
        return self.final_state == DeploymentState.SUCCEEDED

    @property
    def rolled_back(self) -> bool:
        return DeploymentState.ROLLING_BACK in {t.state for t in self.history}

    def states(self) -> list[DeploymentState]:
        return [t.state for t in self.history]


class DeploymentOrchestrator:
    """Sequences backup, promotion, verification, monitoring and rollback.

    Attributes:
        config: Resolved configuration (CLI overrides already applied)
        strategy: Promotion strategy for the deployment mode
        verifier: Health Verifier gating the candidate
        monitor: Extended Monitor run after a successful commit
        logger: Structured logger instance
    """

    def __init__(
        self,
        config: HarbormasterConfig,
        strategy: PromotionStrategy,
        verifier: HealthVerifier,
        monitor: ExtendedMonitor | None = None,
        sleep: Callable[[float], None] = time.sleep,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Initialize DeploymentOrchestrator.

        Args:
            config: Resolved configuration
            strategy: ContainerPromotion or ComposePromotion
            verifier: Health Verifier gating the candidate
            monitor: Extended Monitor (built from the verifier when omitted)
            sleep: Blocking wait used for the startup grace period
            progress: Called with each state entered and a short message
        """
        self.config = config
        self.strategy = strategy
        self.verifier = verifier
        self.monitor = monitor or ExtendedMonitor(verifier, sleep=sleep)
        self.logger = get_logger(__name__)
        self._sleep = sleep
        self._progress = progress

    def _report_progress(self, state: DeploymentState, message: str) -> None:
        if self._progress is not None:
            self._progress(state, message)

    def run(self, request: DeploymentRequest) -> DeploymentReport:
        """Execute one deployment attempt to completion.

        Never raises for deployment failures: the report carries the final
        state, the failure reason and whether rollback was exhausted.
        """
        start_time = time.monotonic()
        deployment_id = uuid.uuid4().hex[:12]
        set_deployment_id(deployment_id)
        bind_deployment_context(request.environment, request.container_name)

        report = DeploymentReport(deployment_id=deployment_id, request=request)
        machine = DeploymentStateMachine()

        self.logger.info(
            "deployment_started",
            image=request.image,
            version=request.resolved_version,
            deploy_path=str(request.deploy_path),
            compose_mode=request.compose_mode,
        )

        steps: dict[DeploymentState, Callable[[DeploymentRequest, DeploymentReport], StepOutcome]] = {
            DeploymentState.INIT: self._init,
            DeploymentState.BACKUP: self._backup,
            DeploymentState.PULLING: self._pull,
            DeploymentState.PROMOTING: self._promote,
            DeploymentState.VERIFYING: self._verify,
            DeploymentState.COMMITTING: self._commit,
            DeploymentState.MONITORING: self._monitor,
            DeploymentState.DONE: self._finalize,
            DeploymentState.ROLLING_BACK: self._rollback,
        }

        while not machine.finished:
            outcome = steps[machine.state](request, report)
            machine.advance(outcome)

        report.final_state = machine.state
        report.history = machine.history
        report.duration_seconds = time.monotonic() - start_time

        if report.succeeded:
            self._report_progress(machine.state, f"Deployed {request.image}")
            self.logger.info(
                "deployment_succeeded",
                image=request.image,
                duration_seconds=round(report.duration_seconds, 2),
            )
        else:
            self._report_progress(machine.state, report.failure_reason or "Deployment failed")
            self.logger.error(
                "deployment_failed",
                image=request.image,
                reason=report.failure_reason,
                rolled_back=report.rolled_back,
                rollback_exhausted=report.rollback_exhausted,
                duration_seconds=round(report.duration_seconds, 2),
            )
        return report

    def _fail(self, report: DeploymentReport, reason: str) -> StepOutcome:
        if report.failure_reason is None:
            report.failure_reason = reason
        return StepOutcome.FAILED

    def _init(self, request: DeploymentRequest, report: DeploymentReport) -> StepOutcome:
        self._report_progress(
            DeploymentState.INIT,
            f"Deploying {request.image} to {request.environment} as {request.container_name}",
        )
        return StepOutcome.OK

    def _backup(self, request: DeploymentRequest, report: DeploymentReport) -> StepOutcome:
        self._report_progress(DeploymentState.BACKUP, "Backing up data")
        manager = BackupManager(
            request.data_dir,
            self.config.backup.data_file,
            retention_count=self.config.backup.retention_count,
        )
        try:
            report.backup = manager.snapshot(request.data_dir / self.config.backup.data_file)
        except BackupError as e:
            return self._fail(report, str(e))

        if not report.backup.taken:
            self._report_progress(DeploymentState.BACKUP, "No existing data, backup skipped")
        return StepOutcome.OK

    def _pull(self, request: DeploymentRequest, report: DeploymentReport) -> StepOutcome:
        self._report_progress(DeploymentState.PULLING, f"Pulling {request.image}")
        result = self.strategy.pull(request)
        if not result.success:
            return self._fail(report, f"Failed to pull image {request.image}: {result.error}")
        return StepOutcome.OK

    def _promote(self, request: DeploymentRequest, report: DeploymentReport) -> StepOutcome:
        self._report_progress(DeploymentState.PROMOTING, "Starting new instance")
        result = self.strategy.promote(request)
        report.instance = result.instance
        if not result.success:
            return self._fail(report, result.error or "Promotion failed")

        grace = self.config.health.startup_grace_seconds
        if grace > 0:
            self.logger.debug("startup_grace_wait", seconds=grace)
            self._sleep(grace)
        return StepOutcome.OK

    def _verify(self, request: DeploymentRequest, report: DeploymentReport) -> StepOutcome:
        health = self.config.health
        self._report_progress(
            DeploymentState.VERIFYING,
            f"Verifying health (up to {health.max_attempts} attempts)",
        )
        report.verification = self.verifier.verify(
            request.base_url,
            endpoint=health.endpoint,
            max_attempts=health.max_attempts,
            interval_seconds=health.interval_seconds,
        )
        if report.verification.healthy:
            return StepOutcome.OK

        logs = self.strategy.diagnostics(report.instance)
        if logs:
            self.logger.error("candidate_logs", instance=report.instance, logs=logs)
        return self._fail(
            report,
            f"Health check failed after {report.verification.attempts} attempts",
        )

    def _commit(self, request: DeploymentRequest, report: DeploymentReport) -> StepOutcome:
        self._report_progress(DeploymentState.COMMITTING, "Recording deployment metadata")
        try:
            write_metadata(request.deploy_path, request.resolved_version)
        except OSError as e:
            self.logger.warning("deployment_metadata_write_failed", error=str(e))
            return StepOutcome.FAILED
        return StepOutcome.OK

    def _monitor(self, request: DeploymentRequest, report: DeploymentReport) -> StepOutcome:
        monitor = self.config.monitor
        if not monitor.enabled:
            self._report_progress(DeploymentState.MONITORING, "Extended monitoring disabled")
            return StepOutcome.OK

        self._report_progress(
            DeploymentState.MONITORING,
            f"Monitoring for {monitor.duration_minutes:g} minutes",
        )
        report.monitor = self.monitor.monitor(
            request.base_url,
            duration_minutes=monitor.duration_minutes,
            interval_seconds=monitor.interval_seconds,
            max_consecutive_failures=monitor.max_consecutive_failures,
            endpoint=self.config.health.endpoint,
        )
        if report.monitor.stable:
            return StepOutcome.OK
        return self._fail(
            report,
            f"Service unstable: {report.monitor.consecutive_failures} consecutive failures "
            f"after {report.monitor.checks_performed} checks",
        )

    def _finalize(self, request: DeploymentRequest, report: DeploymentReport) -> StepOutcome:
        self._report_progress(DeploymentState.DONE, "Promoting candidate")
        result = self.strategy.finalize(request, report.instance)
        if not result.success:
            return self._fail(report, result.error or "Finalization failed")
        report.instance = result.instance
        return StepOutcome.OK

    def _rollback(self, request: DeploymentRequest, report: DeploymentReport) -> StepOutcome:
        self._report_progress(DeploymentState.ROLLING_BACK, "Rolling back")
        try:
            report.rollback = self.strategy.rollback(request, report.instance)
        except RollbackExhaustedError as e:
            report.rollback_exhausted = True
            self._report_progress(DeploymentState.ROLLING_BACK, str(e))
            return StepOutcome.FAILED

        if not report.rollback.success:
            self.logger.critical("rollback_incomplete", error=report.rollback.error)
            return StepOutcome.FAILED
        return StepOutcome.OK
