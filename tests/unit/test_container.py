"""Unit tests for container runtime control.

These tests verify DockerRuntime and ComposeManager using mocked docker-py and
subprocess calls.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from harbormaster.config import DockerConfig
from harbormaster.errors import ComposeFileNotFound
from harbormaster.pipeline.container import (
    ComposeManager,
    ContainerStatus,
    DockerRuntime,
    find_compose_file,
    parse_port_mapping,
)


@pytest.fixture
def docker_config() -> DockerConfig:
    """Create a test Docker configuration."""
    return DockerConfig(registry="test.registry.io", stop_timeout_seconds=7)


@pytest.fixture
def mock_docker_client() -> MagicMock:
    """Create a mock Docker client."""
    return MagicMock()


@pytest.fixture
def mock_container() -> MagicMock:
    """Create a mock Docker container."""
    container = MagicMock()
    container.name = "todos"
    container.status = "running"
    container.attrs = {"Config": {"Image": "ghcr.io/acme/todos:1.3.0"}}
    return container


@pytest.fixture
def runtime(
    docker_config: DockerConfig, mock_docker_client: MagicMock, monkeypatch: pytest.MonkeyPatch
) -> DockerRuntime:
    """Create a DockerRuntime bound to the mock client."""
    monkeypatch.delenv("DOCKER_HOST", raising=False)
    runtime = DockerRuntime(docker_config)
    with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
        runtime._get_client()
    return runtime


class TestParsePortMapping:
    """Test docker run -p style mapping translation."""

    @pytest.mark.parametrize(
        ("mapping", "expected"),
        [
            ("8080:8080", {"8080/tcp": 8080}),
            ("8081:8080", {"8080/tcp": 8081}),
            ("8080", {"8080/tcp": 8080}),
            ("127.0.0.1:8081:8080", {"8080/tcp": ("127.0.0.1", 8081)}),
            ("5353:53/udp", {"53/udp": 5353}),
            ("8080:8080, 9090:9090", {"8080/tcp": 8080, "9090/tcp": 9090}),
        ],
    )
    def test_valid(self, mapping: str, expected: dict) -> None:
        """Test supported mapping forms."""
        assert parse_port_mapping(mapping) == expected

    @pytest.mark.parametrize("mapping", ["http:8080", "8080:8080/sctp", "1:2:3:4"])
    def test_invalid(self, mapping: str) -> None:
        """Test malformed mappings are rejected."""
        with pytest.raises(ValueError, match="port mapping"):
            parse_port_mapping(mapping)


class TestClientConnection:
    """Test lazy client creation."""

    def test_client_connection_lazy(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Docker client connection is lazy."""
        monkeypatch.delenv("DOCKER_HOST", raising=False)
        runtime = DockerRuntime(docker_config)
        assert runtime._client is None

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client) as from_env:
            assert runtime._get_client() is mock_docker_client
            runtime._get_client()

        from_env.assert_called_once()

    def test_docker_host_is_honoured(
        self, docker_config: DockerConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test DOCKER_HOST (including ssh:// remotes) selects the daemon."""
        monkeypatch.setenv("DOCKER_HOST", "ssh://deploy@prod.example.com")
        runtime = DockerRuntime(docker_config)

        with patch("docker.DockerClient") as client_cls:
            runtime._get_client()

        client_cls.assert_called_once_with(base_url="ssh://deploy@prod.example.com")

    def test_close_is_idempotent(self, runtime: DockerRuntime, mock_docker_client: MagicMock) -> None:
        """Test close() can be called repeatedly."""
        runtime.close()
        runtime.close()
        mock_docker_client.close.assert_called_once()
        assert runtime._client is None


class TestIdempotentTeardown:
    """Test stop and remove on absent containers."""

    def test_stop_missing_container_succeeds(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock
    ) -> None:
        """Test stopping a container that does not exist is a no-op success."""
        mock_docker_client.containers.get.side_effect = NotFound("No such container")

        result = runtime.stop("todos-candidate")

        assert result.success is True
        assert result.current_status == ContainerStatus.MISSING.value

    def test_remove_missing_container_succeeds(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock
    ) -> None:
        """Test removing a container that does not exist is a no-op success."""
        mock_docker_client.containers.get.side_effect = NotFound("No such container")

        result = runtime.remove("todos-candidate")

        assert result.success is True
        assert result.action == "remove"

    def test_repeated_teardown_on_fresh_host(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock
    ) -> None:
        """Test stop+remove twice on a fresh host never fails."""
        mock_docker_client.containers.get.side_effect = NotFound("No such container")

        results = [runtime.stop("todos"), runtime.remove("todos")] * 2

        assert all(r.success for r in results)


class TestContainerOperations:
    """Test container lifecycle operations."""

    def test_stop_running_container(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock
    ) -> None:
        """Test a running container is stopped with the configured timeout."""
        mock_docker_client.containers.get.return_value = mock_container

        result = runtime.stop("todos")

        assert result.success is True
        assert result.previous_status == "running"
        mock_container.stop.assert_called_once_with(timeout=7)

    def test_stop_already_stopped(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock
    ) -> None:
        """Test an exited container is not stopped again."""
        mock_container.status = "exited"
        mock_docker_client.containers.get.return_value = mock_container

        result = runtime.stop("todos")

        assert result.success is True
        mock_container.stop.assert_not_called()

    def test_stop_api_error(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock
    ) -> None:
        """Test daemon errors are reported, not raised."""
        mock_container.stop.side_effect = APIError("daemon unavailable")
        mock_docker_client.containers.get.return_value = mock_container

        result = runtime.stop("todos")

        assert result.success is False
        assert "daemon unavailable" in result.error

    def test_start_runs_detached_container(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock
    ) -> None:
        """Test start translates mapping, mounts and restart policy."""
        mock_docker_client.containers.run.return_value = mock_container

        result = runtime.start(
            "todos-candidate",
            "ghcr.io/acme/todos:1.4.0",
            "8080:8080",
            volumes={"/opt/todos/data": "/app/data"},
            environment={"PORT": "8080"},
        )

        assert result.success is True
        assert result.current_status == "running"
        mock_docker_client.containers.run.assert_called_once_with(
            "ghcr.io/acme/todos:1.4.0",
            name="todos-candidate",
            detach=True,
            ports={"8080/tcp": 8080},
            volumes={"/opt/todos/data": {"bind": "/app/data", "mode": "rw"}},
            environment={"PORT": "8080"},
            restart_policy={"Name": "unless-stopped"},
        )

    def test_start_conflict(self, runtime: DockerRuntime, mock_docker_client: MagicMock) -> None:
        """Test a name conflict is reported as a failed start."""
        mock_docker_client.containers.run.side_effect = APIError("Conflict. The name is in use")

        result = runtime.start("todos", "ghcr.io/acme/todos:1.4.0", None)

        assert result.success is False
        assert "Conflict" in result.error

    def test_start_bad_port_mapping(self, runtime: DockerRuntime, mock_docker_client: MagicMock) -> None:
        """Test an invalid mapping fails the start without calling Docker."""
        result = runtime.start("todos", "ghcr.io/acme/todos:1.4.0", "eighty")

        assert result.success is False
        mock_docker_client.containers.run.assert_not_called()

    def test_start_existing_stopped_container(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock
    ) -> None:
        """Test a stopped container is started in place."""
        mock_container.status = "exited"
        mock_docker_client.containers.get.return_value = mock_container

        result = runtime.start_existing("todos")

        assert result.success is True
        mock_container.start.assert_called_once()

    def test_rename(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock
    ) -> None:
        """Test rename delegates to the container."""
        mock_docker_client.containers.get.return_value = mock_container

        result = runtime.rename("todos", "todos-previous")

        assert result.success is True
        assert result.container_id == "todos-previous"
        mock_container.rename.assert_called_once_with("todos-previous")

    def test_rename_missing(self, runtime: DockerRuntime, mock_docker_client: MagicMock) -> None:
        """Test renaming an absent container fails."""
        mock_docker_client.containers.get.side_effect = NotFound("No such container")

        assert runtime.rename("todos", "todos-previous").success is False

    def test_remove_forces(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock
    ) -> None:
        """Test removal is forced."""
        mock_docker_client.containers.get.return_value = mock_container

        assert runtime.remove("todos").success is True
        mock_container.remove.assert_called_once_with(force=True)

    def test_exists(self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock) -> None:
        """Test exists maps NotFound to False."""
        mock_docker_client.containers.get.side_effect = [mock_container, NotFound("gone")]

        assert runtime.exists("todos") is True
        assert runtime.exists("todos") is False

    def test_image_of(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock
    ) -> None:
        """Test the image reference is read from the container config."""
        mock_docker_client.containers.get.return_value = mock_container
        assert runtime.image_of("todos") == "ghcr.io/acme/todos:1.3.0"

    def test_logs_decoded(
        self, runtime: DockerRuntime, mock_docker_client: MagicMock, mock_container: MagicMock
    ) -> None:
        """Test log bytes are decoded."""
        mock_container.logs.return_value = b"server started\n"
        mock_docker_client.containers.get.return_value = mock_container

        assert runtime.logs("todos", tail=10) == "server started\n"
        mock_container.logs.assert_called_once_with(tail=10)

    def test_pull_failure(self, runtime: DockerRuntime, mock_docker_client: MagicMock) -> None:
        """Test a missing image is a failed pull."""
        mock_docker_client.images.pull.side_effect = ImageNotFound("manifest unknown")

        result = runtime.pull("ghcr.io/acme/todos:9.9.9")

        assert result.success is False
        assert result.action == "pull"

    def test_prune_images(self, runtime: DockerRuntime, mock_docker_client: MagicMock) -> None:
        """Test only dangling images are pruned."""
        mock_docker_client.images.prune.return_value = {"SpaceReclaimed": 1024}

        assert runtime.prune_images().success is True
        mock_docker_client.images.prune.assert_called_once_with(filters={"dangling": True})


class TestFindComposeFile:
    """Test compose file discovery."""

    @pytest.mark.parametrize(
        "file_name", ["docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml"]
    )
    def test_known_names(self, tmp_path: Path, file_name: str) -> None:
        """Test each supported file name is found in a relative folder."""
        folder = tmp_path / "stack"
        folder.mkdir()
        (folder / file_name).write_text("services: {}\n")

        assert find_compose_file("stack", tmp_path) == folder / file_name

    def test_preference_order(self, tmp_path: Path) -> None:
        """Test docker-compose.yml wins over compose.yaml."""
        (tmp_path / "compose.yaml").write_text("services: {}\n")
        (tmp_path / "docker-compose.yml").write_text("services: {}\n")

        assert find_compose_file(str(tmp_path), Path("/unused")) == tmp_path / "docker-compose.yml"

    def test_missing(self, tmp_path: Path) -> None:
        """Test an empty folder raises ComposeFileNotFound."""
        with pytest.raises(ComposeFileNotFound):
            find_compose_file(str(tmp_path), tmp_path)


class TestComposeManager:
    """Test docker compose command execution."""

    def test_up_runs_detached(self, tmp_path: Path) -> None:
        """Test up passes -d and runs in the compose file's folder."""
        compose_file = tmp_path / "docker-compose.yml"
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="Started\n")

        with patch("subprocess.run", return_value=completed) as run:
            result = ComposeManager(compose_file).up()

        assert result.success is True
        assert result.output == "Started\n"
        args, kwargs = run.call_args
        assert args[0] == ["docker", "compose", "-f", str(compose_file), "up", "-d"]
        assert kwargs["cwd"] == tmp_path

    def test_nonzero_exit(self, tmp_path: Path) -> None:
        """Test a failing command is reported with its output."""
        completed = subprocess.CompletedProcess(args=[], returncode=1, stdout="pull access denied")

        with patch("subprocess.run", return_value=completed):
            result = ComposeManager(tmp_path / "compose.yml").pull()

        assert result.success is False
        assert result.output == "pull access denied"
        assert "exited with 1" in result.error

    def test_timeout(self, tmp_path: Path) -> None:
        """Test a hung command is reported as failed."""
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="docker", timeout=5)):
            result = ComposeManager(tmp_path / "compose.yml", timeout=5).down()

        assert result.success is False
        assert "timed out" in result.error

    def test_docker_missing(self, tmp_path: Path) -> None:
        """Test a missing docker binary is reported as failed."""
        with patch("subprocess.run", side_effect=FileNotFoundError("docker")):
            result = ComposeManager(tmp_path / "compose.yml").down()

        assert result.success is False
        assert "not found" in result.error
