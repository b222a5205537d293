"""fleetdeck command line: run the server, inspect the fleet, manage claims."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import FleetConfig

console = Console()
error_console = Console(stderr=True)

app = typer.Typer(
    name="fleetdeck",
    help="Control plane for a fleet of autonomous delivery pipeline workers",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config.yaml"),
]


def _load(config_path: Path | None) -> FleetConfig:
    try:
        return FleetConfig.load(config_path)
    except ValueError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


@app.command()
def serve(
    config_path: ConfigOption = None,
    host: Annotated[Optional[str], typer.Option("--host", help="Bind address")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Bind port")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
):
    """Run the dashboard server."""
    import uvicorn

    from .app import create_app

    log_format = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=log_format)

    config = _load(config_path)
    if host:
        config.host = host
    if port:
        config.port = port
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_config=None)


@app.command()
def status(config_path: ConfigOption = None):
    """Print one aggregated fleet snapshot."""
    from .context import FleetContext

    async def snapshot():
        ctx = FleetContext.build(_load(config_path))
        try:
            return await ctx.snapshot()
        finally:
            await ctx.aclose()

    state = asyncio.run(snapshot())
    daemon = state.daemon
    if daemon.running:
        label = "[yellow]paused[/yellow]" if daemon.paused else "[green]running[/green]"
        console.print(f"Daemon: {label} (pid {daemon.pid}, max_parallel {daemon.max_parallel})")
    else:
        console.print("Daemon: [dim]not running[/dim]")

    table = Table(title="Pipelines", show_header=True, header_style="bold cyan")
    table.add_column("Issue", justify="right")
    table.add_column("Title")
    table.add_column("Stage", style="magenta")
    table.add_column("Elapsed", justify="right")
    table.add_column("Iteration", justify="right")
    for p in state.pipelines:
        table.add_row(
            f"#{p.work_item_id}",
            p.title,
            p.stage,
            f"{p.elapsed_s // 60}m",
            f"{p.iteration}/{p.max_iterations}",
        )
    console.print(table)

    console.print(
        f"Queue: {len(state.queue)}  Completed: {state.metrics.completed}  "
        f"Failed: {state.metrics.failed}  "
        f"Cost: ${state.cost.today_spent:.2f}/${state.cost.daily_budget:.2f}"
    )
    grades = state.dora.to_dict()
    names = ("deploy_freq", "lead_time", "cfr", "mttr")
    console.print("DORA: " + "  ".join(f"{n} {grades[n]['grade']}" for n in names))
    for alert in state.alerts:
        color = "red" if alert.severity == "critical" else "yellow"
        console.print(f"[{color}]{alert.severity}[/{color}] {alert.message}")


def _coordinator(config: FleetConfig):
    from .claims.github import GitHubClient
    from .claims.service import ClaimCoordinator

    if not config.github_token or not config.dashboard_repo:
        error_console.print("[red]Error:[/red] GITHUB_PAT and DASHBOARD_REPO are required")
        raise typer.Exit(1)
    client = GitHubClient(
        token=config.github_token,
        api_url=config.github_api_url,
        web_url=config.github_web_url,
        timeout=config.external_timeout,
    )
    return client, ClaimCoordinator(client, config.dashboard_repo)


@app.command()
def claim(
    issue: Annotated[int, typer.Argument(help="Work item number")],
    machine: Annotated[str, typer.Argument(help="Claiming machine name")],
    config_path: ConfigOption = None,
):
    """Claim a work item for a machine."""
    from .claims.service import AlreadyClaimed, ClaimError

    client, coordinator = _coordinator(_load(config_path))

    async def run():
        try:
            return await coordinator.claim(issue, machine)
        finally:
            await client.aclose()

    try:
        asyncio.run(run())
    except AlreadyClaimed as e:
        error_console.print(f"[yellow]#{issue} already claimed by {e.owner}[/yellow]")
        raise typer.Exit(2) from None
    except ClaimError as e:
        error_console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from None
    console.print(f"[green]#{issue} claimed by {machine}[/green]")


@app.command()
def release(
    issue: Annotated[int, typer.Argument(help="Work item number")],
    machine: Annotated[
        Optional[str], typer.Option("--machine", "-m", help="Only release this owner's claim")
    ] = None,
    config_path: ConfigOption = None,
):
    """Release a claim on a work item."""
    from .claims.service import ClaimError

    client, coordinator = _coordinator(_load(config_path))

    async def run():
        try:
            return await coordinator.release(issue, machine)
        finally:
            await client.aclose()

    try:
        released = asyncio.run(run())
    except ClaimError as e:
        error_console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from None
    if released:
        console.print(f"[green]Released #{issue} from {', '.join(released)}[/green]")
    else:
        console.print(f"[dim]#{issue} had no matching claim[/dim]")


if __name__ == "__main__":
    app()
