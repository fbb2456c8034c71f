"""Promotion strategies for the two deployment modes.

ContainerPromotion runs a single named container and keeps the replaced
instance as ``<name>-previous`` until the candidate is confirmed.
ComposePromotion replaces a compose project in place (down, then up) and keeps
no previous instance.

Both expose the same steps to the orchestrator: pull, promote, finalize,
rollback and diagnostics.
"""

from __future__ import annotations

import time
from typing import Protocol

from pydantic import BaseModel, Field

from harbormaster.config import DockerConfig
from harbormaster.errors import ComposeFileNotFound
from harbormaster.logging import get_logger
from harbormaster.orchestrator.request import DeploymentRequest
from harbormaster.orchestrator.rollback import RollbackExecutor, RollbackResult
from harbormaster.pipeline.container import (
    ComposeManager,
    ContainerAction,
    RuntimeController,
    find_compose_file,
)


class StepResult(BaseModel):
    """Result of one promotion step.

    Attributes:
        success: Whether the step succeeded
        step: Step name (pull, promote, finalize)
        instance: Name the new instance runs under, or would have run under when
            promotion failed after the active instance was touched
        actions: Runtime operations performed, in order
        error: Error message if the step failed
        duration_seconds: Time taken for the step
    """

    success: bool = Field(description="Step success flag")
    step: str = Field(description="Step name")
    instance: str | None = Field(default=None, description="New instance name")
    actions: list[ContainerAction] = Field(default_factory=list, description="Runtime steps")
    error: str | None = Field(default=None, description="Error message")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Step duration")


class PromotionStrategy(Protocol):
    """Operations the orchestrator performs to replace a running version."""

    def pull(self, request: DeploymentRequest) -> StepResult: ...

    def promote(self, request: DeploymentRequest) -> StepResult: ...

    def finalize(self, request: DeploymentRequest, instance: str | None) -> StepResult: ...

    def rollback(
        self, request: DeploymentRequest, failed_instance: str | None
    ) -> RollbackResult: ...

    def diagnostics(self, instance: str | None) -> str: ...


class ContainerPromotion:
    """Candidate/previous promotion of a single named container.

    Attributes:
        runtime: Container runtime controller
        config: Docker configuration (registry, data mount, environment)
        rollback_executor: Executor used when the candidate is rejected
        logger: Structured logger instance
    """

    def __init__(
        self,
        runtime: RuntimeController,
        config: DockerConfig,
        rollback_executor: RollbackExecutor,
    ) -> None:
        self.runtime = runtime
        self.config = config
        self.rollback_executor = rollback_executor
        self.logger = get_logger(__name__)

    def pull(self, request: DeploymentRequest) -> StepResult:
        """Log in to the registry when credentials are configured, then pull."""
        start_time = time.monotonic()
        actions: list[ContainerAction] = []

        if self.config.username and self.config.password:
            login = self.runtime.login(
                self.config.registry, self.config.username, self.config.password
            )
            actions.append(login)
            if not login.success:
                return StepResult(
                    success=False,
                    step="pull",
                    actions=actions,
                    error=f"Registry login failed: {login.error}",
                    duration_seconds=time.monotonic() - start_time,
                )

        pull = self.runtime.pull(request.image)
        actions.append(pull)
        return StepResult(
            success=pull.success,
            step="pull",
            actions=actions,
            error=pull.error,
            duration_seconds=time.monotonic() - start_time,
        )

    def promote(self, request: DeploymentRequest) -> StepResult:
        """Move the active instance aside and start the new image.

        The active instance is renamed to ``<name>-previous`` and stopped; the
        new image starts as ``<name>-candidate``. With no active and no previous
        instance (first deployment) the new image starts under the canonical
        name directly.
        """
        start_time = time.monotonic()
        actions: list[ContainerAction] = []
        name = request.container_name

        def failed(error: str | None, instance: str | None = None) -> StepResult:
            return StepResult(
                success=False,
                step="promote",
                instance=instance,
                actions=actions,
                error=error,
                duration_seconds=time.monotonic() - start_time,
            )

        for action in (
            self.runtime.stop(request.candidate_name),
            self.runtime.remove(request.candidate_name),
        ):
            actions.append(action)
            if not action.success:
                self.logger.warning(
                    "stale_candidate_cleanup_failed",
                    container_id=request.candidate_name,
                    error=action.error,
                )

        if self.runtime.exists(name):
            if self.runtime.exists(request.previous_name):
                stale = self.runtime.remove(request.previous_name)
                actions.append(stale)
                if not stale.success:
                    return failed(
                        f"Could not remove stale previous instance: {stale.error}",
                        request.candidate_name,
                    )

            rename = self.runtime.rename(name, request.previous_name)
            actions.append(rename)
            if not rename.success:
                return failed(
                    f"Could not move active instance aside: {rename.error}",
                    request.candidate_name,
                )

            stop = self.runtime.stop(request.previous_name)
            actions.append(stop)
            if not stop.success:
                return failed(
                    f"Could not stop previous instance: {stop.error}",
                    request.candidate_name,
                )

            instance = request.candidate_name
        elif self.runtime.exists(request.previous_name):
            # Interrupted earlier run; keep previous as the rollback target
            self.logger.warning(
                "previous_without_active",
                previous=request.previous_name,
            )
            instance = request.candidate_name
        else:
            self.logger.info("first_deployment", container_name=name)
            instance = name

        request.data_dir.mkdir(parents=True, exist_ok=True)
        start = self.runtime.start(
            instance,
            request.image,
            request.port_mapping,
            volumes={str(request.data_dir): self.config.data_mount},
            environment=dict(self.config.container_env),
        )
        actions.append(start)
        if not start.success:
            return failed(f"Could not start {instance}: {start.error}", instance)

        return StepResult(
            success=True,
            step="promote",
            instance=instance,
            actions=actions,
            duration_seconds=time.monotonic() - start_time,
        )

    def finalize(self, request: DeploymentRequest, instance: str | None) -> StepResult:
        """Give the confirmed candidate the canonical name and drop previous."""
        start_time = time.monotonic()
        actions: list[ContainerAction] = []

        if instance and instance != request.container_name:
            rename = self.runtime.rename(instance, request.container_name)
            actions.append(rename)
            if not rename.success:
                return StepResult(
                    success=False,
                    step="finalize",
                    instance=instance,
                    actions=actions,
                    error=f"Could not rename {instance}: {rename.error}",
                    duration_seconds=time.monotonic() - start_time,
                )

        removed = self.runtime.remove(request.previous_name)
        actions.append(removed)
        if not removed.success:
            self.logger.warning(
                "previous_cleanup_failed",
                container_id=request.previous_name,
                error=removed.error,
            )

        return StepResult(
            success=True,
            step="finalize",
            instance=request.container_name,
            actions=actions,
            duration_seconds=time.monotonic() - start_time,
        )

    def rollback(self, request: DeploymentRequest, failed_instance: str | None) -> RollbackResult:
        return self.rollback_executor.rollback(
            request.container_name,
            request.deploy_path,
            failed_instance=failed_instance or request.candidate_name,
            base_url=request.base_url,
        )

    def diagnostics(self, instance: str | None) -> str:
        return self.runtime.logs(instance) if instance else ""


class ComposePromotion:
    """In-place replacement of a Docker Compose project.

    Attributes:
        rollback_executor: Executor used when the new project is rejected
        logger: Structured logger instance
    """

    def __init__(self, rollback_executor: RollbackExecutor) -> None:
        self.rollback_executor = rollback_executor
        self.logger = get_logger(__name__)
        self._compose: ComposeManager | None = None

    def _manager(self, request: DeploymentRequest) -> ComposeManager:
        if self._compose is None:
            self._compose = ComposeManager(
                find_compose_file(request.compose_folder or ".", request.deploy_path)
            )
        return self._compose

    def _step(self, step: str, request: DeploymentRequest, *commands: str) -> StepResult:
        start_time = time.monotonic()
        try:
            compose = self._manager(request)
        except ComposeFileNotFound as e:
            self.logger.error("compose_file_not_found", error=str(e))
            return StepResult(success=False, step=step, error=str(e))

        for command in commands:
            action = getattr(compose, command)()
            if not action.success:
                return StepResult(
                    success=False,
                    step=step,
                    error=action.error,
                    duration_seconds=time.monotonic() - start_time,
                )

        return StepResult(
            success=True,
            step=step,
            instance=request.container_name,
            duration_seconds=time.monotonic() - start_time,
        )

    def pull(self, request: DeploymentRequest) -> StepResult:
        return self._step("pull", request, "pull")

    def promote(self, request: DeploymentRequest) -> StepResult:
        return self._step("promote", request, "down", "up")

    def finalize(self, request: DeploymentRequest, instance: str | None) -> StepResult:
        return StepResult(success=True, step="finalize", instance=instance)

    def rollback(self, request: DeploymentRequest, failed_instance: str | None) -> RollbackResult:
        return self.rollback_executor.rollback_compose(
            self._manager(request), request.container_name, request.deploy_path
        )

    def diagnostics(self, instance: str | None) -> str:
        return self._compose.logs() if self._compose is not None else ""
