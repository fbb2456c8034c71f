"""Container runtime control for Harbormaster.

This module provides the capability interface the deployment protocol drives
(pull, start, stop, rename, remove, exists, logs) and its Docker binding.
DockerRuntime wraps docker-py with structured logging and reports failures as
ContainerAction results instead of raising. ComposeManager drives the
``docker compose`` CLI for compose-style deployments.

All operations are synchronous. Stopping or removing a container that does
not exist succeeds, so teardown on a fresh host is a no-op.

Remote hosts are reached by pointing DOCKER_HOST at them (``ssh://user@host``
uses docker-py's SSH transport); nothing in the protocol depends on whether
the runtime is local.

Example usage:
    >>> from harbormaster.config import DockerConfig
    >>> from harbormaster.pipeline.container import DockerRuntime
    >>>
    >>> runtime = DockerRuntime(DockerConfig())
    >>> action = runtime.pull("ghcr.io/acme/todos:1.4.0")
    >>> if action.success and not runtime.exists("todos"):
    ...     runtime.start("todos", "ghcr.io/acme/todos:1.4.0", "8080:8080")
"""

from __future__ import annotations

import os
import subprocess
import time
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from pydantic import BaseModel, Field

import docker
from harbormaster.config import DockerConfig
from harbormaster.errors import ComposeFileNotFound
from harbormaster.logging import get_logger

COMPOSE_FILE_NAMES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)


class ContainerStatus(str, Enum):
    """Status of a Docker container.

    Attributes:
        RUNNING: Container is running
        PAUSED: Container is paused
        RESTARTING: Container is restarting
        EXITED: Container has exited
        DEAD: Container is dead (non-recoverable error state)
        CREATED: Container has been created but not started
        REMOVING: Container is being removed
        MISSING: No container with that name exists
    """

    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    EXITED = "exited"
    DEAD = "dead"
    CREATED = "created"
    REMOVING = "removing"
    MISSING = "missing"


class ContainerAction(BaseModel):
    """Result of a runtime operation.

    Attributes:
        success: Whether the operation completed successfully
        container_id: Container name (or image reference for pulls)
        action: Action performed (pull, start, stop, rename, remove, ...)
        previous_status: Container status before the operation
        current_status: Container status after the operation
        error: Error message if operation failed
        duration_seconds: Time taken for the operation
    """

    success: bool = Field(description="Operation success flag")
    container_id: str = Field(description="Container name or image")
    action: str = Field(description="Action performed")
    previous_status: str | None = Field(default=None, description="Status before action")
    current_status: str | None = Field(default=None, description="Status after action")
    error: str | None = Field(default=None, description="Error message if failed")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Operation duration")


class ComposeAction(BaseModel):
    """Result of a Docker Compose operation.

    Attributes:
        success: Whether the command exited with status 0
        action: Compose sub-command (pull, down, up, logs)
        output: Combined stdout and stderr
        error: Error message if the command failed
        duration_seconds: Time taken for the command
    """

    success: bool = Field(description="Operation success flag")
    action: str = Field(description="Action performed")
    output: str = Field(default="", description="Command output")
    error: str | None = Field(default=None, description="Error message if failed")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Operation duration")


class RuntimeController(Protocol):
    """Capability interface over a container runtime."""

    def login(self, registry: str, username: str, password: str) -> ContainerAction: ...

    def pull(self, image: str) -> ContainerAction: ...

    def start(
        self,
        name: str,
        image: str,
        port_mapping: str | None,
        volumes: dict[str, str] | None = None,
        environment: dict[str, str] | None = None,
    ) -> ContainerAction: ...

    def start_existing(self, name: str) -> ContainerAction: ...

    def stop(self, name: str) -> ContainerAction: ...

    def rename(self, old_name: str, new_name: str) -> ContainerAction: ...

    def remove(self, name: str) -> ContainerAction: ...

    def exists(self, name: str) -> bool: ...

    def logs(self, name: str, tail: int = 50) -> str: ...

    def image_of(self, name: str) -> str | None: ...

    def prune_images(self) -> ContainerAction: ...

    def close(self) -> None: ...


def parse_port_mapping(port_mapping: str) -> dict[str, Any]:
    """Translate a ``docker run -p`` style mapping into docker-py ``ports``.

    Accepts ``CONTAINER``, ``HOST:CONTAINER`` and ``IP:HOST:CONTAINER``, each
    optionally suffixed with ``/tcp`` or ``/udp``; several mappings may be
    separated by commas.

    Raises:
        ValueError: If a mapping cannot be parsed
    """
    ports: dict[str, Any] = {}
    for raw in port_mapping.split(","):
        spec = raw.strip()
        if not spec:
            continue

        protocol = "tcp"
        if "/" in spec:
            spec, protocol = spec.rsplit("/", 1)
            if protocol not in ("tcp", "udp"):
                raise ValueError(f"Invalid protocol in port mapping: {raw!r}")

        parts = spec.split(":")
        try:
            if len(parts) == 1:
                ports[f"{int(parts[0])}/{protocol}"] = int(parts[0])
            elif len(parts) == 2:
                ports[f"{int(parts[1])}/{protocol}"] = int(parts[0])
            elif len(parts) == 3:
                ports[f"{int(parts[2])}/{protocol}"] = (parts[0], int(parts[1]))
            else:
                raise ValueError(f"Invalid port mapping: {raw!r}")
        except ValueError as e:
            raise ValueError(f"Invalid port mapping: {raw!r}") from e

    return ports


class DockerRuntime:
    """RuntimeController bound to the Docker Engine through docker-py.

    Attributes:
        config: Docker configuration from HarbormasterConfig
        logger: Structured logger instance
    """

    def __init__(self, config: DockerConfig) -> None:
        """Initialize DockerRuntime with configuration.

        The Docker client connection is deferred until first use.
        """
        self.config = config
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = None

    def _get_client(self) -> docker.DockerClient:
        """Get or create the Docker client connection.

        Raises:
            DockerException: If unable to connect to Docker daemon
        """
        if self._client is None:
            try:
                docker_host = os.environ.get("DOCKER_HOST")
                if docker_host:
                    self._client = docker.DockerClient(base_url=docker_host)
                elif self.config.rootless and hasattr(os, "getuid"):
                    xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
                    try:
                        self._client = docker.DockerClient(
                            base_url=f"unix://{xdg_runtime}/docker.sock"
                        )
                    except DockerException:
                        self._client = docker.DockerClient.from_env()
                else:
                    self._client = docker.DockerClient.from_env()

                self.logger.debug(
                    "docker_client_connected",
                    docker_host=docker_host,
                    rootless=self.config.rootless,
                )
            except DockerException as e:
                self.logger.error(
                    "docker_client_connection_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

        return self._client

    def _failed(self, name: str, action: str, error: Exception, start_time: float) -> ContainerAction:
        self.logger.error(
            f"container_{action}_failed",
            container_id=name,
            error=str(error),
            error_type=type(error).__name__,
        )
        return ContainerAction(
            success=False,
            container_id=name,
            action=action,
            error=str(error),
            duration_seconds=time.monotonic() - start_time,
        )

    def login(self, registry: str, username: str, password: str) -> ContainerAction:
        """Authenticate against a registry before pulling."""
        start_time = time.monotonic()
        try:
            self._get_client().login(username=username, password=password, registry=registry)
        except DockerException as e:
            return self._failed(registry, "login", e, start_time)

        self.logger.info("registry_login_succeeded", registry=registry, username=username)
        return ContainerAction(
            success=True,
            container_id=registry,
            action="login",
            duration_seconds=time.monotonic() - start_time,
        )

    def pull(self, image: str) -> ContainerAction:
        """Pull an image reference (``repo:tag`` or ``repo@digest``)."""
        start_time = time.monotonic()
        self.logger.info("pulling_image", image=image)

        try:
            self._get_client().images.pull(image)
        except (ImageNotFound, APIError, DockerException) as e:
            return self._failed(image, "pull", e, start_time)

        duration = time.monotonic() - start_time
        self.logger.info("image_pulled", image=image, duration_seconds=round(duration, 2))
        return ContainerAction(
            success=True,
            container_id=image,
            action="pull",
            duration_seconds=duration,
        )

    def start(
        self,
        name: str,
        image: str,
        port_mapping: str | None,
        volumes: dict[str, str] | None = None,
        environment: dict[str, str] | None = None,
    ) -> ContainerAction:
        """Create and start a detached container.

        Args:
            name: Container name
            image: Image reference to run
            port_mapping: ``docker run -p`` style mapping, or None
            volumes: Host path to container path bind mounts
            environment: Container environment variables
        """
        start_time = time.monotonic()
        self.logger.info("starting_container", container_id=name, image=image)

        try:
            ports = parse_port_mapping(port_mapping) if port_mapping else None
            binds = {
                host: {"bind": target, "mode": "rw"} for host, target in (volumes or {}).items()
            }
            container = self._get_client().containers.run(
                image,
                name=name,
                detach=True,
                ports=ports,
                volumes=binds or None,
                environment=environment or None,
                restart_policy={"Name": self.config.restart_policy},
            )
            container.reload()
            current_status = container.status
        except (ValueError, APIError, DockerException) as e:
            return self._failed(name, "start", e, start_time)

        duration = time.monotonic() - start_time
        self.logger.info(
            "container_started",
            container_id=name,
            image=image,
            current_status=current_status,
            duration_seconds=round(duration, 2),
        )
        return ContainerAction(
            success=True,
            container_id=name,
            action="start",
            previous_status=ContainerStatus.MISSING.value,
            current_status=current_status,
            duration_seconds=duration,
        )

    def start_existing(self, name: str) -> ContainerAction:
        """Start a container that already exists (e.g. a reinstated previous)."""
        start_time = time.monotonic()
        self.logger.info("starting_existing_container", container_id=name)

        try:
            container = self._get_client().containers.get(name)
            container.reload()
            previous_status = container.status
            if previous_status != ContainerStatus.RUNNING.value:
                container.start()
                container.reload()
            current_status = container.status
        except (NotFound, APIError, DockerException) as e:
            return self._failed(name, "start", e, start_time)

        return ContainerAction(
            success=True,
            container_id=name,
            action="start",
            previous_status=previous_status,
            current_status=current_status,
            duration_seconds=time.monotonic() - start_time,
        )

    def stop(self, name: str) -> ContainerAction:
        """Stop a container; a missing or already stopped container is a success."""
        start_time = time.monotonic()

        try:
            container = self._get_client().containers.get(name)
            container.reload()
            previous_status = container.status

            if previous_status in (
                ContainerStatus.EXITED.value,
                ContainerStatus.CREATED.value,
                ContainerStatus.DEAD.value,
            ):
                self.logger.debug("container_already_stopped", container_id=name)
                current_status = previous_status
            else:
                container.stop(timeout=self.config.stop_timeout_seconds)
                container.reload()
                current_status = container.status
        except NotFound:
            self.logger.debug("container_absent", container_id=name, action="stop")
            return ContainerAction(
                success=True,
                container_id=name,
                action="stop",
                previous_status=ContainerStatus.MISSING.value,
                current_status=ContainerStatus.MISSING.value,
                duration_seconds=time.monotonic() - start_time,
            )
        except (APIError, DockerException) as e:
            return self._failed(name, "stop", e, start_time)

        duration = time.monotonic() - start_time
        self.logger.info(
            "container_stopped",
            container_id=name,
            previous_status=previous_status,
            current_status=current_status,
            duration_seconds=round(duration, 2),
        )
        return ContainerAction(
            success=True,
            container_id=name,
            action="stop",
            previous_status=previous_status,
            current_status=current_status,
            duration_seconds=duration,
        )

    def rename(self, old_name: str, new_name: str) -> ContainerAction:
        """Rename a container."""
        start_time = time.monotonic()

        try:
            container = self._get_client().containers.get(old_name)
            container.rename(new_name)
        except (NotFound, APIError, DockerException) as e:
            return self._failed(old_name, "rename", e, start_time)

        self.logger.info("container_renamed", container_id=old_name, new_name=new_name)
        return ContainerAction(
            success=True,
            container_id=new_name,
            action="rename",
            duration_seconds=time.monotonic() - start_time,
        )

    def remove(self, name: str) -> ContainerAction:
        """Force-remove a container; a missing container is a success."""
        start_time = time.monotonic()

        try:
            container = self._get_client().containers.get(name)
            previous_status = container.status
            container.remove(force=True)
        except NotFound:
            self.logger.debug("container_absent", container_id=name, action="remove")
            return ContainerAction(
                success=True,
                container_id=name,
                action="remove",
                previous_status=ContainerStatus.MISSING.value,
                current_status=ContainerStatus.MISSING.value,
                duration_seconds=time.monotonic() - start_time,
            )
        except (APIError, DockerException) as e:
            return self._failed(name, "remove", e, start_time)

        self.logger.info("container_removed", container_id=name)
        return ContainerAction(
            success=True,
            container_id=name,
            action="remove",
            previous_status=previous_status,
            current_status=ContainerStatus.MISSING.value,
            duration_seconds=time.monotonic() - start_time,
        )

    def exists(self, name: str) -> bool:
        """Whether a container with exactly this name exists (any state)."""
        try:
            self._get_client().containers.get(name)
        except NotFound:
            return False
        return True

    def logs(self, name: str, tail: int = 50) -> str:
        """Return the last ``tail`` log lines of a container, for diagnostics."""
        try:
            raw = self._get_client().containers.get(name).logs(tail=tail)
        except (NotFound, APIError, DockerException) as e:
            self.logger.warning("container_logs_unavailable", container_id=name, error=str(e))
            return ""
        return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)

    def image_of(self, name: str) -> str | None:
        """Image reference a container was created from, or None if it is missing."""
        try:
            container = self._get_client().containers.get(name)
        except (NotFound, APIError, DockerException):
            return None
        return container.attrs.get("Config", {}).get("Image")

    def prune_images(self) -> ContainerAction:
        """Remove dangling images."""
        start_time = time.monotonic()
        try:
            result = self._get_client().images.prune(filters={"dangling": True})
        except (APIError, DockerException) as e:
            return self._failed("images", "prune", e, start_time)

        reclaimed = (result or {}).get("SpaceReclaimed", 0)
        self.logger.info("images_pruned", space_reclaimed=reclaimed)
        return ContainerAction(
            success=True,
            container_id="images",
            action="prune",
            duration_seconds=time.monotonic() - start_time,
        )

    def close(self) -> None:
        """Close the Docker client connection.

        Safe to call multiple times or if the client was never connected.
        """
        if self._client is not None:
            try:
                self._client.close()
            except DockerException as e:
                self.logger.warning("docker_client_close_error", error=str(e))
            finally:
                self._client = None


def find_compose_file(compose_folder: str, deploy_path: Path) -> Path:
    """Locate the compose file of a compose-style deployment.

    Args:
        compose_folder: Absolute folder, or folder relative to deploy_path
        deploy_path: Deployment root directory

    Raises:
        ComposeFileNotFound: If none of the known compose file names exist
    """
    folder = Path(compose_folder)
    if not folder.is_absolute():
        folder = deploy_path / folder

    for file_name in COMPOSE_FILE_NAMES:
        candidate = folder / file_name
        if candidate.is_file():
            return candidate

    raise ComposeFileNotFound(folder)


class ComposeManager:
    """Synchronous Docker Compose project manager.

    Uses the ``docker compose`` CLI for the project described by one compose
    file. Commands never raise on a non-zero exit; the result carries the
    output for diagnostics.

    Attributes:
        compose_file: Path to the compose file
        logger: Structured logger instance
    """

    def __init__(self, compose_file: Path, timeout: int = 600) -> None:
        """Initialize ComposeManager.

        Args:
            compose_file: Path to the compose file
            timeout: Per-command timeout in seconds
        """
        self.compose_file = compose_file
        self.timeout = timeout
        self.logger = get_logger(__name__)

    def _run_compose_command(self, *args: str) -> ComposeAction:
        cmd = ["docker", "compose", "-f", str(self.compose_file), *args]
        action = args[0] if args else ""
        start_time = time.monotonic()

        self.logger.debug("running_compose_command", command=" ".join(cmd))

        try:
            proc = subprocess.run(
                cmd,
                cwd=self.compose_file.parent,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            error_msg = f"Command timed out after {self.timeout} seconds"
            self.logger.error("compose_command_timeout", command=" ".join(cmd))
            return ComposeAction(
                success=False,
                action=action,
                error=error_msg,
                duration_seconds=time.monotonic() - start_time,
            )
        except FileNotFoundError:
            error_msg = "docker compose command not found. Is Docker Compose installed?"
            self.logger.error("compose_command_not_found")
            return ComposeAction(
                success=False,
                action=action,
                error=error_msg,
                duration_seconds=time.monotonic() - start_time,
            )

        duration = time.monotonic() - start_time
        if proc.returncode != 0:
            self.logger.error(
                "compose_command_failed",
                command=" ".join(cmd),
                returncode=proc.returncode,
                output=proc.stdout[-500:],
            )
            return ComposeAction(
                success=False,
                action=action,
                output=proc.stdout,
                error=f"docker compose {action} exited with {proc.returncode}",
                duration_seconds=duration,
            )

        self.logger.debug("compose_command_succeeded", command=" ".join(cmd))
        return ComposeAction(
            success=True,
            action=action,
            output=proc.stdout,
            duration_seconds=duration,
        )

    def pull(self) -> ComposeAction:
        """Pull every image referenced by the compose file."""
        return self._run_compose_command("pull")

    def down(self) -> ComposeAction:
        """Stop and remove the project's containers."""
        return self._run_compose_command("down")

    def up(self) -> ComposeAction:
        """Create and start the project's containers in the background."""
        return self._run_compose_command("up", "-d")

    def logs(self, tail: int = 50) -> str:
        """Return the last ``tail`` log lines of every service."""
        return self._run_compose_command("logs", "--tail", str(tail)).output
