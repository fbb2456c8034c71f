"""Main CLI entry point for Harbormaster.

This module provides the main Typer application with the deployment commands
and the standalone health-check sub-commands.

Usage:
    harbormaster deploy --image ghcr.io/acme/todos:1.4.0 --name todos --port 8080:8080 --deploy-path /opt/todos
    harbormaster rollback --name todos --deploy-path /opt/todos
    harbormaster cleanup --name todos
    harbormaster health verify http://localhost:8080
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from harbormaster.cli import deployment as deployment_cli
from harbormaster.cli import health as health_cli
from harbormaster.config import DockerConfig, HarbormasterConfig, HealthConfig, load_config
from harbormaster.logging import setup_logging
from harbormaster.pipeline.container import DockerRuntime, RuntimeController
from harbormaster.pipeline.health import HealthVerifier

app = typer.Typer(
    name="harbormaster",
    help="Harbormaster: health-gated container deployments with automatic rollback",
    no_args_is_help=True,
)

# Deployment commands live at the top level
app.command(name="deploy")(deployment_cli.deploy)
app.command(name="rollback")(deployment_cli.rollback)
app.command(name="cleanup")(deployment_cli.cleanup)
app.command(name="status")(deployment_cli.status)

# Add sub-apps
app.add_typer(health_cli.app, name="health", help="Standalone health checks")

err_console = Console(stderr=True)


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Harbormaster configuration
    """

    def __init__(self, config: HarbormasterConfig):
        """Initialize application context.

        Args:
            config: Harbormaster configuration
        """
        self.config = config


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: HarbormasterConfig) -> AppContext:
    """Initialize the global application context.

    Args:
        config: Harbormaster configuration

    Returns:
        Initialized AppContext instance
    """
    global _app_context
    _app_context = AppContext(config)
    return _app_context


def create_runtime(config: DockerConfig) -> RuntimeController:
    """Build the container runtime binding used by the commands."""
    return DockerRuntime(config)


def create_verifier(config: HealthConfig) -> HealthVerifier:
    """Build the HTTP health verifier used by the commands."""
    return HealthVerifier(timeout_seconds=config.request_timeout_seconds)


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context.

    Args:
        config_path: Optional path to TOML configuration file
        verbose: Enable debug-level logging
    """
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        err_console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config = config.model_copy(
            update={"logging": config.logging.model_copy(update={"level": "DEBUG"})}
        )

    setup_logging(config.logging)
    initialize_context(config)


if __name__ == "__main__":
    app()
