"""Shared pytest fixtures.

Provides in-memory stand-ins for the deployment collaborators:
- fake_runtime: a RuntimeController keeping containers in a dict
- make_verifier: a HealthVerifier answering from a scripted response sequence
- sleeps: a recording replacement for time.sleep
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from pathlib import Path

import httpx
import pytest
import structlog

from harbormaster.config import (
    BackupConfig,
    HarbormasterConfig,
    HealthConfig,
    MonitorConfig,
)
from harbormaster.logging import set_deployment_id
from harbormaster.orchestrator.request import DeploymentRequest
from harbormaster.pipeline.container import ContainerAction, ContainerStatus
from harbormaster.pipeline.health import HealthVerifier

MUTATING_OPERATIONS = {"start", "start_existing", "stop", "rename", "remove"}


class FakeRuntime:
    """In-memory RuntimeController.

    Attributes:
        containers: Container name to {"image", "running"}
        calls: Every operation performed, as (operation, *args)
        fail_on: (operation, target) pairs that report failure
        before_mutation: Called with the operation name before each mutation
    """

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, object]] = {}
        self.calls: list[tuple[str, ...]] = []
        self.fail_on: set[tuple[str, str]] = set()
        self.before_mutation: Callable[[str], None] | None = None
        self.closed = False

    def add(self, name: str, image: str, running: bool = True) -> None:
        self.containers[name] = {"image": image, "running": running}

    def running(self, name: str) -> bool:
        return bool(self.containers.get(name, {}).get("running"))

    def _record(self, operation: str, *args: str) -> bool:
        if operation in MUTATING_OPERATIONS and self.before_mutation is not None:
            self.before_mutation(operation)
        self.calls.append((operation, *args))
        return bool(args) and (operation, args[0]) in self.fail_on

    def _result(self, name: str, action: str, error: str | None = None) -> ContainerAction:
        return ContainerAction(
            success=error is None,
            container_id=name,
            action=action,
            error=error,
        )

    def login(self, registry: str, username: str, password: str) -> ContainerAction:
        if self._record("login", registry):
            return self._result(registry, "login", "unauthorized")
        return self._result(registry, "login")

    def pull(self, image: str) -> ContainerAction:
        if self._record("pull", image):
            return self._result(image, "pull", "manifest unknown")
        return self._result(image, "pull")

    def start(
        self,
        name: str,
        image: str,
        port_mapping: str | None,
        volumes: dict[str, str] | None = None,
        environment: dict[str, str] | None = None,
    ) -> ContainerAction:
        if self._record("start", name, image):
            return self._result(name, "start", "port is already allocated")
        if name in self.containers:
            return self._result(name, "start", f"Conflict: {name} already in use")
        self.add(name, image)
        return self._result(name, "start")

    def start_existing(self, name: str) -> ContainerAction:
        if self._record("start_existing", name) or name not in self.containers:
            return self._result(name, "start", f"No such container: {name}")
        self.containers[name]["running"] = True
        return self._result(name, "start")

    def stop(self, name: str) -> ContainerAction:
        if self._record("stop", name):
            return self._result(name, "stop", "stop timed out")
        if name in self.containers:
            self.containers[name]["running"] = False
        return ContainerAction(
            success=True,
            container_id=name,
            action="stop",
            current_status=(
                ContainerStatus.EXITED.value
                if name in self.containers
                else ContainerStatus.MISSING.value
            ),
        )

    def rename(self, old_name: str, new_name: str) -> ContainerAction:
        if self._record("rename", old_name, new_name):
            return self._result(old_name, "rename", "rename refused")
        if old_name not in self.containers:
            return self._result(old_name, "rename", f"No such container: {old_name}")
        if new_name in self.containers:
            return self._result(old_name, "rename", f"Conflict: {new_name} already in use")
        self.containers[new_name] = self.containers.pop(old_name)
        return self._result(new_name, "rename")

    def remove(self, name: str) -> ContainerAction:
        if self._record("remove", name):
            return self._result(name, "remove", "removal in progress")
        self.containers.pop(name, None)
        return self._result(name, "remove")

    def exists(self, name: str) -> bool:
        return name in self.containers

    def logs(self, name: str, tail: int = 50) -> str:
        return f"{name}: listening on 0.0.0.0:8080" if name in self.containers else ""

    def image_of(self, name: str) -> str | None:
        container = self.containers.get(name)
        return str(container["image"]) if container else None

    def prune_images(self) -> ContainerAction:
        self._record("prune_images")
        return self._result("images", "prune")

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def reset_logging() -> Iterable[None]:
    """Keep logging configuration from leaking between tests."""
    yield
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    set_deployment_id(None)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    """Create an empty in-memory runtime."""
    return FakeRuntime()


@pytest.fixture
def sleeps() -> list[float]:
    """Record requested sleeps instead of waiting."""
    return []


@pytest.fixture
def make_verifier(sleeps: list[float]) -> Callable[..., HealthVerifier]:
    """Build HealthVerifiers answering from a scripted sequence.

    Each item is a status code or an exception instance to raise. The last
    item repeats once the sequence is exhausted. The returned verifier has a
    ``requests`` attribute listing the URLs requested.
    """

    def factory(responses: list[int | Exception]) -> HealthVerifier:
        script = list(responses)
        requests: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(str(request.url))
            item = script.pop(0) if len(script) > 1 else script[0]
            if isinstance(item, Exception):
                raise item
            return httpx.Response(item, json={"status": "ok"})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        verifier = HealthVerifier(client=client, timeout_seconds=1.0, sleep=sleeps.append)
        verifier.requests = requests  # type: ignore[attr-defined]
        return verifier

    return factory


@pytest.fixture
def config() -> HarbormasterConfig:
    """Configuration with fast health checks and a short monitoring window."""
    return HarbormasterConfig(
        health=HealthConfig(
            base_url="http://localhost:8080",
            max_attempts=5,
            interval_seconds=2.0,
            startup_grace_seconds=0.0,
        ),
        monitor=MonitorConfig(
            enabled=True,
            duration_minutes=2.0,
            interval_seconds=30.0,
            max_consecutive_failures=3,
        ),
        backup=BackupConfig(data_file="db.sqlite", retention_count=10),
    )


@pytest.fixture
def deploy_path(tmp_path: Path) -> Path:
    """Deployment root with an existing data file."""
    data_dir = tmp_path / "deploy" / "data"
    data_dir.mkdir(parents=True)
    (data_dir / "db.sqlite").write_text("todos-v1")
    return tmp_path / "deploy"


@pytest.fixture
def request_factory(deploy_path: Path) -> Callable[..., DeploymentRequest]:
    """Build DeploymentRequests for the todos service."""

    def factory(**overrides: object) -> DeploymentRequest:
        values: dict[str, object] = {
            "environment": "staging",
            "image": "ghcr.io/acme/todos:1.4.0",
            "container_name": "todos",
            "port_mapping": "8080:8080",
            "deploy_path": deploy_path,
            "base_url": "http://localhost:8080",
        }
        values.update(overrides)
        return DeploymentRequest(**values)

    return factory
