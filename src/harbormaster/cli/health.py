"""Standalone health check CLI commands.

This module provides the one-shot verification and the extended monitoring
window as commands of their own, for CI jobs that gate on a service they did
not deploy.
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from harbormaster.pipeline.health import DEFAULT_ENDPOINT, ExtendedMonitor

app = typer.Typer(help="Standalone health check commands")
console = Console()
err_console = Console(stderr=True)


@app.command()
def verify(
    base_url: Annotated[str, typer.Argument(help="Service base URL")],
    endpoint: Annotated[
        str,
        typer.Option("--endpoint", "-e", help="Liveness endpoint path"),
    ] = DEFAULT_ENDPOINT,
    retries: Annotated[
        int,
        typer.Option("--retries", "-r", min=1, help="Maximum attempts"),
    ] = 30,
    interval: Annotated[
        float,
        typer.Option("--interval", "-i", min=0.0, help="Seconds between attempts"),
    ] = 2.0,
) -> None:
    """Poll a health endpoint until it answers 200 or attempts run out."""
    from harbormaster.main import create_verifier, get_app_context

    ctx = get_app_context()
    verifier = create_verifier(ctx.config.health)

    console.print(f"[bold cyan]Health check[/bold cyan] {base_url.rstrip('/')}{endpoint}")
    try:
        result = verifier.verify(
            base_url, endpoint=endpoint, max_attempts=retries, interval_seconds=interval
        )
    finally:
        verifier.close()

    if not result.healthy:
        err_console.print(f"[red]Health check failed after {result.attempts} attempts[/red]")
        raise typer.Exit(code=1)

    status_code = result.last_verdict.status_code if result.last_verdict else None
    console.print(
        f"[green]Service is healthy[/green] "
        f"(attempt {result.attempts}/{retries}, status {status_code})"
    )


@app.command()
def monitor(
    base_url: Annotated[str, typer.Argument(help="Service base URL")],
    duration: Annotated[
        float,
        typer.Option("--duration", "-d", min=0.0, help="Monitoring window in minutes"),
    ] = 5.0,
    interval: Annotated[
        float,
        typer.Option("--interval", "-i", min=0.001, help="Seconds between checks"),
    ] = 30.0,
    max_failures: Annotated[
        int,
        typer.Option("--max-failures", "-m", min=1, help="Consecutive failures allowed"),
    ] = 3,
    endpoint: Annotated[
        str,
        typer.Option("--endpoint", "-e", help="Liveness endpoint path"),
    ] = DEFAULT_ENDPOINT,
) -> None:
    """Watch a service over a window, failing on a run of consecutive failures."""
    from harbormaster.main import create_verifier, get_app_context

    ctx = get_app_context()
    verifier = create_verifier(ctx.config.health)
    extended = ExtendedMonitor(verifier)

    try:
        result = extended.monitor(
            base_url,
            duration_minutes=duration,
            interval_seconds=interval,
            max_consecutive_failures=max_failures,
            endpoint=endpoint,
        )
    finally:
        verifier.close()

    table = Table(title="Extended Monitoring")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("URL", result.url)
    table.add_row("Total checks", f"{result.checks_performed}/{result.planned_checks}")
    table.add_row("Total failures", str(result.total_failures))
    if result.checks_performed:
        success_rate = 100 * (result.checks_performed - result.total_failures)
        table.add_row("Success rate", f"{success_rate / result.checks_performed:.1f}%")
    console.print(table)

    if not result.stable:
        err_console.print(
            f"[red]{result.consecutive_failures} consecutive failures detected[/red]"
        )
        raise typer.Exit(code=1)

    console.print("[green]Monitoring complete, application stable[/green]")
