"""aksmcp CLI — run, install and inspect the local AKS-MCP server."""

from __future__ import annotations

import asyncio
import socket
from pathlib import Path
from urllib.parse import urlparse

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn
from rich.table import Table

from aksmcp.cli.context import build_manager, build_provisioner, configure_logging, run_async
from aksmcp.config import AgentConfig, load_settings
from aksmcp.exceptions import AksMcpError, UnexpectedExit
from aksmcp.mcp.config import EndpointPublisher
from aksmcp.types import AccessLevel

console = Console()

app = typer.Typer(
    name="aksmcp",
    help="Provision and supervise a local AKS-MCP server for MCP clients.",
    no_args_is_help=True,
)


@app.command("run")
def run(
    port: int | None = typer.Option(None, "--port", "-p", help="Port the server listens on"),
    access_level: AccessLevel | None = typer.Option(None, "--access-level", help="Cluster access level"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace that receives .vscode/mcp.json"),
    tools: str | None = typer.Option(None, "--additional-tools", help="Comma-separated extra tools"),
):
    """Start the AKS-MCP server and supervise it until Ctrl-C."""
    overrides = {
        "server_port": port,
        "access_level": access_level,
        "workspace_dir": workspace,
        "additional_tools": tools,
    }
    settings = load_settings(**overrides)
    configure_logging(settings.log_level)
    code = run_async(_run(overrides))
    raise typer.Exit(code)


async def _run(overrides: dict) -> int:
    manager = build_manager(overrides)
    exited = asyncio.Event()
    failure: list[UnexpectedExit] = []

    async def _on_exit(error: UnexpectedExit) -> None:
        failure.append(error)
        exited.set()

    manager.on_unexpected_exit(_on_exit)
    async with manager:
        try:
            result = await manager.start()
        except (AksMcpError, ValueError) as e:
            console.print(f"[red]Failed to start AKS-MCP server: {e}[/red]")
            return 1

        artifact = str(result.artifact_path) if result.artifact_path else "[yellow]not published[/yellow]"
        console.print(Panel(
            f"[green]AKS-MCP server running[/green] (pid {result.pid})\n\n"
            f"Endpoint:  [bold]{result.endpoint_url}[/bold]\n"
            f"MCP config: {artifact}\n\n"
            "[dim]Press Ctrl-C to stop.[/dim]",
            title="aksmcp",
            border_style="cyan",
        ))
        if result.publish_error:
            console.print(f"[yellow]{result.publish_error}[/yellow]")

        try:
            await exited.wait()
        except asyncio.CancelledError:
            console.print("[dim]Stopping AKS-MCP server...[/dim]")
            return 0

    console.print(f"[red]{failure[0]}[/red]")
    return 1


@app.command("install")
def install(
    force: bool = typer.Option(False, "--force", "-f", help="Re-download even if installed"),
):
    """Download the AKS-MCP server binary for this platform."""
    settings = load_settings()
    configure_logging(settings.log_level)
    provisioner = build_provisioner(settings)
    config = AgentConfig.from_settings(settings)

    if force:
        if settings.server_path is not None:
            console.print("[red]--force only applies to the default install location.[/red]")
            raise typer.Exit(1)
        provisioner.uninstall()

    with Progress(
        TextColumn("[cyan]Downloading aks-mcp"),
        BarColumn(),
        DownloadColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("download", total=None)

        def _on_progress(done: int, total: int | None) -> None:
            progress.update(task, completed=done, total=total)

        try:
            path = run_async(provisioner.ensure(config, progress=_on_progress))
        except AksMcpError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)

    console.print(f"[green]AKS-MCP server available at {path}[/green]")


@app.command("status")
def status():
    """Show configuration, installed binary and published endpoint."""
    settings = load_settings()
    provisioner = build_provisioner(settings)
    config = AgentConfig.from_settings(settings)
    path = provisioner.install_path(config)
    artifact = EndpointPublisher(settings.workspace_dir).read()

    table = Table(title="AKS-MCP server", show_header=False)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("Binary", str(path))
    table.add_row("Installed", "[green]yes[/green]" if path.exists() else "[red]no[/red]")
    table.add_row("Release", settings.release_version)
    table.add_row("Access level", config.access_level.value)
    table.add_row("Port", str(config.port))
    table.add_row("Additional tools", ", ".join(config.extra_tools) or "[dim]none[/dim]")
    table.add_row("Auto-start", "on" if settings.auto_start else "off")
    table.add_row("Workspace", str(settings.workspace_dir) if settings.workspace_dir else "[dim]none[/dim]")

    if artifact is None:
        table.add_row("Endpoint", "[dim]not published[/dim]")
    else:
        reachable = _is_reachable(artifact.url)
        state = "[green]reachable[/green]" if reachable else "[red]unreachable[/red]"
        table.add_row("Endpoint", f"{artifact.url} ({state})")

    console.print(table)


@app.command("version")
def version():
    """Show the aksmcp version."""
    from aksmcp import __version__
    console.print(f"aksmcp {__version__}")


def _is_reachable(url: str) -> bool:
    parsed = urlparse(url)
    if not parsed.hostname or not parsed.port:
        return False
    try:
        with socket.create_connection((parsed.hostname, parsed.port), timeout=0.5):
            return True
    except OSError:
        return False


def main() -> None:
    app()


if __name__ == "__main__":
    main()
