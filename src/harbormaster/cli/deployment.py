"""Deployment CLI commands.

This module provides the deploy, rollback, cleanup and status commands. The
options of deploy, rollback and cleanup fall back to the environment variables
the CI workflows export (IMAGE_TAG, CONTAINER_NAME, PORT_MAPPING, DEPLOY_PATH,
VERSION, COMPOSE_FOLDER, PRUNE_IMAGES).

Exit codes:
    0: success
    1: failure (including a deployment that was rolled back)
    2: rollback exhausted, operator intervention required
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from harbormaster.config import HarbormasterConfig
from harbormaster.errors import HarbormasterError, RollbackExhaustedError
from harbormaster.orchestrator.deployer import DeploymentOrchestrator, DeploymentReport
from harbormaster.orchestrator.promotion import ComposePromotion, ContainerPromotion
from harbormaster.orchestrator.request import DeploymentRequest
from harbormaster.orchestrator.rollback import RollbackExecutor
from harbormaster.orchestrator.state_machine import DeploymentState
from harbormaster.pipeline.container import ComposeManager, find_compose_file
from harbormaster.pipeline.metadata import read_metadata

console = Console()
err_console = Console(stderr=True)

EXIT_FAILURE = 1
EXIT_ROLLBACK_EXHAUSTED = 2


def _apply_overrides(
    config: HarbormasterConfig,
    base_url: str | None = None,
    health_retries: int | None = None,
    health_interval: float | None = None,
    monitor_minutes: float | None = None,
    monitor_interval: float | None = None,
    monitor_max_failures: int | None = None,
    no_monitor: bool = False,
) -> HarbormasterConfig:
    health_updates = {
        key: value
        for key, value in (
            ("base_url", base_url),
            ("max_attempts", health_retries),
            ("interval_seconds", health_interval),
        )
        if value is not None
    }
    monitor_updates = {
        key: value
        for key, value in (
            ("duration_minutes", monitor_minutes),
            ("interval_seconds", monitor_interval),
            ("max_consecutive_failures", monitor_max_failures),
        )
        if value is not None
    }
    if no_monitor:
        monitor_updates["enabled"] = False

    return config.model_copy(
        update={
            "health": config.health.model_copy(update=health_updates),
            "monitor": config.monitor.model_copy(update=monitor_updates),
        }
    )


def _print_progress(state: DeploymentState, message: str) -> None:
    style = {
        DeploymentState.ROLLING_BACK: "bold yellow",
        DeploymentState.FAILED: "bold red",
        DeploymentState.SUCCEEDED: "bold green",
    }.get(state, "bold cyan")
    console.print(f"[{style}]{state.value.upper():<12}[/{style}] {message}")


def _print_report(report: DeploymentReport) -> None:
    request = report.request
    lines = [
        f"[bold]Image:[/bold] {request.image}",
        f"[bold]Version:[/bold] {request.resolved_version}",
        f"[bold]Environment:[/bold] {request.environment}",
        f"[bold]States:[/bold] {' -> '.join(s.value for s in report.states())}",
        f"[bold]Duration:[/bold] {report.duration_seconds:.1f}s",
    ]
    if report.backup.taken:
        lines.append(f"[bold]Backup:[/bold] {report.backup.path}")
    if report.monitor is not None:
        lines.append(
            f"[bold]Monitoring:[/bold] {report.monitor.checks_performed}/"
            f"{report.monitor.planned_checks} checks, "
            f"{report.monitor.total_failures} failures"
        )

    if report.succeeded:
        panel = Panel("\n".join(lines), title="Deployment Succeeded", border_style="green")
    elif report.rollback_exhausted:
        lines.append(f"[bold]Reason:[/bold] {report.failure_reason}")
        lines.append(
            "[bold red]Rollback exhausted: no previous instance. "
            "Manual intervention required.[/bold red]"
        )
        panel = Panel("\n".join(lines), title="Deployment Failed", border_style="red")
    else:
        lines.append(f"[bold]Reason:[/bold] {report.failure_reason}")
        if report.rolled_back:
            lines.append("[yellow]Rolled back to the previous version[/yellow]")
        panel = Panel("\n".join(lines), title="Deployment Failed", border_style="red")
    console.print(panel)


def deploy(
    image: Annotated[
        str,
        typer.Option("--image", "-i", envvar="IMAGE_TAG", help="Image reference to deploy"),
    ],
    name: Annotated[
        str,
        typer.Option("--name", "-n", envvar="CONTAINER_NAME", help="Canonical container name"),
    ],
    deploy_path: Annotated[
        Path,
        typer.Option(
            "--deploy-path",
            "-d",
            envvar="DEPLOY_PATH",
            help="Deployment root (data, backups, metadata)",
            file_okay=False,
        ),
    ],
    port: Annotated[
        Optional[str],
        typer.Option("--port", "-p", envvar="PORT_MAPPING", help="Port mapping HOST:CONTAINER"),
    ] = None,
    version: Annotated[
        Optional[str],
        typer.Option("--version", envvar="VERSION", help="Version to record (default: image tag)"),
    ] = None,
    environment: Annotated[
        str,
        typer.Option("--environment", "-e", help="Environment identity"),
    ] = "production",
    compose_folder: Annotated[
        Optional[str],
        typer.Option(
            "--compose-folder",
            envvar="COMPOSE_FOLDER",
            help="Compose project folder (enables compose mode)",
        ),
    ] = None,
    base_url: Annotated[
        Optional[str],
        typer.Option("--base-url", help="Base URL for health checks"),
    ] = None,
    health_retries: Annotated[
        Optional[int],
        typer.Option("--health-retries", min=1, help="Health check attempts"),
    ] = None,
    health_interval: Annotated[
        Optional[float],
        typer.Option("--health-interval", min=0.0, help="Seconds between health checks"),
    ] = None,
    monitor_minutes: Annotated[
        Optional[float],
        typer.Option("--monitor-minutes", min=0.0, help="Extended monitoring duration"),
    ] = None,
    monitor_interval: Annotated[
        Optional[float],
        typer.Option("--monitor-interval", min=0.001, help="Seconds between monitoring checks"),
    ] = None,
    monitor_max_failures: Annotated[
        Optional[int],
        typer.Option("--monitor-max-failures", min=1, help="Consecutive failures allowed"),
    ] = None,
    no_monitor: Annotated[
        bool,
        typer.Option("--no-monitor", help="Skip extended monitoring"),
    ] = False,
) -> None:
    """Deploy an image with health verification and automatic rollback."""
    from harbormaster.main import create_runtime, create_verifier, get_app_context

    ctx = get_app_context()
    config = _apply_overrides(
        ctx.config,
        base_url=base_url,
        health_retries=health_retries,
        health_interval=health_interval,
        monitor_minutes=monitor_minutes,
        monitor_interval=monitor_interval,
        monitor_max_failures=monitor_max_failures,
        no_monitor=no_monitor,
    )

    try:
        request = DeploymentRequest(
            environment=environment,
            image=image,
            container_name=name,
            port_mapping=port,
            deploy_path=deploy_path,
            version=version,
            compose_folder=compose_folder,
            base_url=config.health.base_url,
        )
    except ValidationError as e:
        err_console.print(f"[red]Invalid deployment request:[/red] {e}")
        raise typer.Exit(code=EXIT_FAILURE)

    runtime = create_runtime(config.docker)
    verifier = create_verifier(config.health)
    executor = RollbackExecutor(
        runtime,
        data_file=config.backup.data_file,
        health_endpoint=config.health.endpoint,
    )
    if request.compose_mode:
        strategy = ComposePromotion(executor)
    else:
        strategy = ContainerPromotion(runtime, config.docker, executor)

    orchestrator = DeploymentOrchestrator(
        config,
        strategy,
        verifier,
        sleep=verifier.sleep,
        progress=_print_progress,
    )

    try:
        report = orchestrator.run(request)
    finally:
        verifier.close()
        runtime.close()

    _print_report(report)
    if report.rollback_exhausted:
        raise typer.Exit(code=EXIT_ROLLBACK_EXHAUSTED)
    if not report.succeeded:
        raise typer.Exit(code=EXIT_FAILURE)


def rollback(
    name: Annotated[
        str,
        typer.Option("--name", "-n", envvar="CONTAINER_NAME", help="Canonical container name"),
    ],
    deploy_path: Annotated[
        Path,
        typer.Option(
            "--deploy-path",
            "-d",
            envvar="DEPLOY_PATH",
            help="Deployment root (data, backups, metadata)",
            file_okay=False,
        ),
    ],
    compose_folder: Annotated[
        Optional[str],
        typer.Option(
            "--compose-folder",
            envvar="COMPOSE_FOLDER",
            help="Compose project folder (compose mode)",
        ),
    ] = None,
    verify: Annotated[
        bool,
        typer.Option("--verify/--no-verify", help="Verify health after rolling back"),
    ] = True,
    base_url: Annotated[
        Optional[str],
        typer.Option("--base-url", help="Base URL for the post-rollback health check"),
    ] = None,
) -> None:
    """Reinstate the previous instance and restore the latest data backup."""
    from harbormaster.main import create_runtime, create_verifier, get_app_context

    ctx = get_app_context()
    config = ctx.config
    runtime = create_runtime(config.docker)
    verifier = create_verifier(config.health) if verify else None
    executor = RollbackExecutor(
        runtime,
        data_file=config.backup.data_file,
        verifier=verifier,
        health_endpoint=config.health.endpoint,
    )

    console.print(f"[bold yellow]Rolling back[/bold yellow] {name} in {deploy_path}")
    try:
        if compose_folder:
            compose = ComposeManager(find_compose_file(compose_folder, deploy_path))
            executor.rollback_compose(compose, name, deploy_path)
        else:
            result = executor.rollback(
                name,
                deploy_path,
                base_url=base_url or config.health.base_url,
            )
    except RollbackExhaustedError as e:
        err_console.print(f"[bold red]Rollback exhausted:[/bold red] {e}")
        err_console.print("[red]Manual intervention required.[/red]")
        raise typer.Exit(code=EXIT_ROLLBACK_EXHAUSTED)
    except HarbormasterError as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=EXIT_FAILURE)
    finally:
        if verifier is not None:
            verifier.close()
        runtime.close()

    if not result.success:
        err_console.print(f"[red]Rollback failed:[/red] {result.error}")
        raise typer.Exit(code=EXIT_FAILURE)

    if result.restored_backup is not None:
        console.print(f"[green]Data restored from[/green] {result.restored_backup.name}")
    console.print(f"[green]Rolled back to[/green] {result.reinstated_image or name}")

    if result.verified is False:
        err_console.print("[red]Rolled back instance failed its health check[/red]")
        raise typer.Exit(code=EXIT_FAILURE)


def cleanup(
    name: Annotated[
        str,
        typer.Option("--name", "-n", envvar="CONTAINER_NAME", help="Canonical container name"),
    ],
    prune_images: Annotated[
        bool,
        typer.Option(
            "--prune-images/--no-prune-images",
            envvar="PRUNE_IMAGES",
            help="Remove dangling images",
        ),
    ] = True,
) -> None:
    """Remove the retained previous instance and prune unused images."""
    from harbormaster.main import create_runtime, get_app_context

    ctx = get_app_context()
    runtime = create_runtime(ctx.config.docker)
    previous = f"{name}-previous"

    try:
        if runtime.exists(previous):
            removed = runtime.remove(previous)
            if removed.success:
                console.print(f"[green]Removed[/green] {previous}")
            else:
                err_console.print(f"[yellow]Failed to remove {previous}:[/yellow] {removed.error}")
        else:
            console.print(f"[dim]No previous instance {previous}[/dim]")

        if prune_images:
            pruned = runtime.prune_images()
            if pruned.success:
                console.print("[green]Pruned unused images[/green]")
            else:
                err_console.print(f"[yellow]Image prune failed:[/yellow] {pruned.error}")
    finally:
        runtime.close()


def status(
    deploy_path: Annotated[
        Path,
        typer.Option(
            "--deploy-path",
            "-d",
            envvar="DEPLOY_PATH",
            help="Deployment root (data, backups, metadata)",
            file_okay=False,
        ),
    ],
    name: Annotated[
        Optional[str],
        typer.Option("--name", "-n", envvar="CONTAINER_NAME", help="Canonical container name"),
    ] = None,
    base_url: Annotated[
        Optional[str],
        typer.Option("--base-url", help="Query the service's version endpoint"),
    ] = None,
) -> None:
    """Show the recorded deployment, its instances and backups."""
    from harbormaster.main import create_runtime, create_verifier, get_app_context
    from harbormaster.pipeline.backup import BackupManager

    ctx = get_app_context()
    config = ctx.config

    table = Table(title=f"Deployment {deploy_path}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    metadata = read_metadata(deploy_path)
    if metadata is None:
        table.add_row("Version", "[dim]none recorded[/dim]")
    else:
        table.add_row("Version", metadata.version)
        deployed = metadata.deployed_at + (" (rollback)" if metadata.rollback else "")
        table.add_row("Deployed", deployed)

    backups = BackupManager(deploy_path / "data", config.backup.data_file).list_backups()
    table.add_row("Backups", str(len(backups)))
    if backups:
        table.add_row("Latest backup", backups[0].path.name)

    if name:
        runtime = create_runtime(config.docker)
        try:
            for instance in (name, f"{name}-candidate", f"{name}-previous"):
                image = runtime.image_of(instance) if runtime.exists(instance) else None
                table.add_row(instance, image or "[dim]absent[/dim]")
        finally:
            runtime.close()

    if base_url:
        verifier = create_verifier(config.health)
        try:
            payload = verifier.fetch_version(base_url)
        finally:
            verifier.close()
        table.add_row("Live version", str(payload) if payload else "[dim]unavailable[/dim]")

    console.print(table)
