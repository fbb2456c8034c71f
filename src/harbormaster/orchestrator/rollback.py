"""Rollback executor: reverse a failed promotion.

Rollback is best-effort. Every step is attempted once and every failure is
logged; the only condition that raises is the absence of a previous instance
to reinstate, because the environment may then be down with no automatic
recovery path.

Container mode, in order:
1. Stop and remove the failed candidate (and the canonical instance when it is
   the failed one). A canonical instance that was never moved aside is left
   serving and nothing else is touched.
2. Stop ``<name>-previous`` and restore the newest data backup while nothing
   is serving. A previous instance that cannot be stopped keeps the live data.
3. Rename ``<name>-previous`` back to ``<name>`` and start it.

Compose mode has no previous instance: the project is brought down, the data
is restored, and the rollback is reported as exhausted.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import NoReturn

from pydantic import BaseModel, Field

from harbormaster.errors import NoBackupAvailable, RollbackExhaustedError
from harbormaster.logging import get_logger
from harbormaster.orchestrator.request import CANDIDATE_SUFFIX, DATA_DIR, PREVIOUS_SUFFIX
from harbormaster.pipeline.backup import BackupManager
from harbormaster.pipeline.container import ComposeManager, ContainerAction, RuntimeController
from harbormaster.pipeline.health import HealthVerifier
from harbormaster.pipeline.metadata import version_from_image, write_metadata

# Post-rollback verification budget
ROLLBACK_VERIFY_ATTEMPTS = 20
ROLLBACK_VERIFY_INTERVAL_SECONDS = 2.0


class RollbackResult(BaseModel):
    """Result of a rollback execution.

    Attributes:
        success: Whether a previous instance was reinstated (or left serving)
        container_name: Canonical instance name
        steps: Runtime operations performed, in order
        restored_backup: Backup restored over the live data, if any
        reinstated_image: Image of the reinstated instance, if known
        verified: Post-rollback health verdict (None when not verified)
        error: Error message if rollback failed
        duration_seconds: Time taken to execute rollback
    """

    success: bool = Field(description="Rollback success flag")
    container_name: str = Field(description="Canonical instance name")
    steps: list[ContainerAction] = Field(default_factory=list, description="Runtime steps")
    restored_backup: Path | None = Field(default=None, description="Restored backup")
    reinstated_image: str | None = Field(default=None, description="Reinstated image")
    verified: bool | None = Field(default=None, description="Post-rollback health")
    error: str | None = Field(default=None, description="Error message")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Rollback duration")


class RollbackExecutor:
    """Reinstates the previous instance and data after a failed promotion.

    Attributes:
        runtime: Container runtime controller
        data_file: Name of the persistent data file under <deploy_path>/data
        verifier: Optional HealthVerifier for post-rollback verification
        logger: Structured logger instance
    """

    def __init__(
        self,
        runtime: RuntimeController,
        data_file: str = "db.sqlite",
        verifier: HealthVerifier | None = None,
        health_endpoint: str = "/health",
    ) -> None:
        self.runtime = runtime
        self.data_file = data_file
        self.verifier = verifier
        self.health_endpoint = health_endpoint
        self.logger = get_logger(__name__)

    def _restore_data(self, deploy_path: Path) -> Path | None:
        data_dir = deploy_path / DATA_DIR
        manager = BackupManager(data_dir, self.data_file)
        try:
            handle = manager.latest()
            manager.restore(handle, data_dir / self.data_file)
        except NoBackupAvailable:
            self.logger.warning("rollback_no_backup", data_dir=str(data_dir))
            return None
        except OSError as e:
            self.logger.warning("rollback_restore_failed", data_dir=str(data_dir), error=str(e))
            return None
        return handle.path

    def _teardown(self, name: str, steps: list[ContainerAction]) -> None:
        for action in (self.runtime.stop(name), self.runtime.remove(name)):
            steps.append(action)
            if not action.success:
                self.logger.warning(
                    "rollback_teardown_failed",
                    container_id=name,
                    action=action.action,
                    error=action.error,
                )

    def rollback(
        self,
        container_name: str,
        deploy_path: Path,
        failed_instance: str | None = None,
        base_url: str | None = None,
    ) -> RollbackResult:
        """Roll a container-mode deployment back to its previous instance.

        Args:
            container_name: Canonical instance name
            deploy_path: Deployment root directory
            failed_instance: Name the failed candidate runs under. None means an
                operator-requested rollback of whatever holds the canonical name.
            base_url: Verify the reinstated instance against this URL when a
                verifier is configured

        Returns:
            RollbackResult describing the steps taken

        Raises:
            RollbackExhaustedError: If no previous instance exists. An operator
                rollback raises before touching the runtime; a failed deployment
                raises after its instance was torn down
        """
        start_time = time.monotonic()
        candidate = f"{container_name}{CANDIDATE_SUFFIX}"
        previous = f"{container_name}{PREVIOUS_SUFFIX}"
        steps: list[ContainerAction] = []

        has_previous = self.runtime.exists(previous)
        remove_canonical = failed_instance in (None, container_name)

        self.logger.warning(
            "rollback_started",
            container_name=container_name,
            failed_instance=failed_instance,
            has_previous=has_previous,
        )

        if failed_instance is None and not has_previous:
            # Operator rollback with nothing to reinstate; the canonical
            # instance keeps serving
            self.logger.critical("rollback_exhausted", container_name=container_name)
            raise RollbackExhaustedError(container_name, "no previous instance exists")

        self._teardown(candidate, steps)
        if remove_canonical:
            self._teardown(container_name, steps)
        elif self.runtime.exists(container_name):
            # Promotion failed before the active instance was moved aside; it
            # still serves the live data, which must not be restored under it
            self.logger.warning(
                "rollback_active_instance_untouched",
                container_name=container_name,
            )
            return RollbackResult(
                success=True,
                container_name=container_name,
                steps=steps,
                reinstated_image=self.runtime.image_of(container_name),
                duration_seconds=time.monotonic() - start_time,
            )

        restored = None
        if has_previous:
            stop = self.runtime.stop(previous)
            steps.append(stop)
            if stop.success:
                restored = self._restore_data(deploy_path)
            else:
                # Data is only restored while nothing has it open
                self.logger.warning(
                    "rollback_restore_skipped",
                    container_id=previous,
                    error=stop.error,
                )
        else:
            restored = self._restore_data(deploy_path)

        if not has_previous:
            self.logger.critical("rollback_exhausted", container_name=container_name)
            raise RollbackExhaustedError(container_name, "no previous instance exists")

        rename = self.runtime.rename(previous, container_name)
        steps.append(rename)
        if not rename.success:
            return self._failed(container_name, steps, restored, rename.error, start_time)

        started = self.runtime.start_existing(container_name)
        steps.append(started)
        if not started.success:
            return self._failed(container_name, steps, restored, started.error, start_time)

        reinstated_image = self.runtime.image_of(container_name)
        self.logger.info(
            "rollback_reinstated_previous",
            container_name=container_name,
            image=reinstated_image,
        )

        if reinstated_image:
            try:
                write_metadata(deploy_path, version_from_image(reinstated_image), rollback=True)
            except OSError as e:
                self.logger.warning("rollback_metadata_write_failed", error=str(e))

        verified = None
        if self.verifier is not None and base_url:
            verified = self.verifier.verify(
                base_url,
                endpoint=self.health_endpoint,
                max_attempts=ROLLBACK_VERIFY_ATTEMPTS,
                interval_seconds=ROLLBACK_VERIFY_INTERVAL_SECONDS,
            ).healthy
            if not verified:
                self.logger.error("rollback_verification_failed", container_name=container_name)

        duration = time.monotonic() - start_time
        self.logger.info(
            "rollback_completed",
            container_name=container_name,
            duration_seconds=round(duration, 2),
            verified=verified,
        )
        return RollbackResult(
            success=True,
            container_name=container_name,
            steps=steps,
            restored_backup=restored,
            reinstated_image=reinstated_image,
            verified=verified,
            duration_seconds=duration,
        )

    def _failed(
        self,
        container_name: str,
        steps: list[ContainerAction],
        restored: Path | None,
        error: str | None,
        start_time: float,
    ) -> RollbackResult:
        self.logger.critical(
            "rollback_failed",
            container_name=container_name,
            error=error,
        )
        return RollbackResult(
            success=False,
            container_name=container_name,
            steps=steps,
            restored_backup=restored,
            error=error,
            duration_seconds=time.monotonic() - start_time,
        )

    def rollback_compose(
        self,
        compose: ComposeManager,
        container_name: str,
        deploy_path: Path,
    ) -> NoReturn:
        """Bring a compose project down and restore its data.

        Compose deployments keep no previous instance, so this always ends in
        RollbackExhaustedError once the data is restored.

        Raises:
            RollbackExhaustedError: Always
        """
        self.logger.warning(
            "compose_rollback_started",
            container_name=container_name,
            compose_file=str(compose.compose_file),
        )

        down = compose.down()
        if not down.success:
            self.logger.warning("compose_down_failed", error=down.error)

        self._restore_data(deploy_path)

        self.logger.critical("rollback_exhausted", container_name=container_name)
        raise RollbackExhaustedError(container_name, "compose deployments keep no previous instance")
