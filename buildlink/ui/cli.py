"""Main CLI entry point - subcommands for building against the server."""

import dataclasses
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import typer

from buildlink.core.build import BuildOrchestrator
from buildlink.core.configs import ClientSettings, get_client_settings, load_raw_config
from buildlink.core.connection import BuildEnv
from buildlink.daemon.client import DaemonClient, get_runtime_dir, server_exists, start_server
from buildlink.daemon.protocol import BuildOptions

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="buildlink - run builds through a background analysis server.",
)

ROOT_ARGUMENT = typer.Argument(
    None,
    help="Project root (defaults to the current directory)",
    show_default=False,
)


def _setup_logging(verbose: bool) -> None:
    # stdout carries build records, so logs always go to stderr.
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _setup_telemetry() -> None:
    events = logging.getLogger("buildlink.events")
    if events.handlers:
        return
    runtime_dir = get_runtime_dir()
    try:
        runtime_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        handler = logging.FileHandler(runtime_dir / "client-events.log")
    except OSError as e:
        logging.getLogger(__name__).debug("Telemetry log unavailable: %s", e)
        return
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    events.addHandler(handler)
    events.setLevel(logging.INFO)
    events.propagate = False


def _resolve_root(root: Optional[Path]) -> Path:
    resolved = (root or Path.cwd()).resolve()
    if not resolved.is_dir():
        typer.echo(f"Not a directory: {resolved}", err=True)
        raise typer.Exit(1)
    return resolved


def _load_settings(root: Path, retries: Optional[int]) -> ClientSettings:
    try:
        settings = get_client_settings(load_raw_config(root=root))
    except ValueError as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(1)
    if retries is not None:
        settings = dataclasses.replace(settings, retries=retries)
    return settings


@app.command()
def build(
    root: Optional[Path] = ROOT_ARGUMENT,
    wait: bool = typer.Option(False, "--wait", help="Wait forever for the server to initialize"),
    incremental: bool = typer.Option(False, "--incremental", help="Only rebuild what changed"),
    retries: Optional[int] = typer.Option(
        None, "--retries", min=0, help="Connection retry budget (one per second)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log connection details to stderr"),
) -> None:
    """
    Build the project through its server, starting the server if needed.

    Exit codes: 0 success, 1 server went away, 2 build errors or server
    unreachable.
    """
    _setup_logging(verbose)
    _setup_telemetry()
    root = _resolve_root(root)
    settings = _load_settings(root, retries)

    env = BuildEnv(root=root, options=BuildOptions(wait=wait, incremental=incremental))
    outcome = BuildOrchestrator(env, settings).run()
    raise typer.Exit(outcome.exit_code)


@app.command()
def status(root: Optional[Path] = ROOT_ARGUMENT) -> None:
    """Show the server's health for a project root."""
    from rich.console import Console
    from rich.table import Table

    console = Console()
    root = _resolve_root(root)
    stats = DaemonClient(root).health()

    if stats is None:
        console.print(f"[yellow]No server running for {root}[/yellow]")
        raise typer.Exit(1)
    if stats.get("initializing"):
        console.print(f"[yellow]Server for {root} is still initializing[/yellow]")
        return

    table = Table(title="Build server", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in stats.items():
        table.add_row(key, str(value))
    console.print(table)


def _stop(root: Path) -> bool:
    if not DaemonClient(root).shutdown():
        return False
    # Wait for the process to exit (max 5 seconds)
    for _ in range(50):
        if not server_exists(root):
            break
        time.sleep(0.1)
    return True


@app.command()
def stop(root: Optional[Path] = ROOT_ARGUMENT) -> None:
    """Stop the server for a project root."""
    root = _resolve_root(root)
    if _stop(root):
        typer.echo(f"Server for {root} stopped.")
    else:
        typer.echo(f"No server running for {root}.", err=True)
        raise typer.Exit(1)


@app.command()
def restart(root: Optional[Path] = ROOT_ARGUMENT) -> None:
    """Stop the server (if any) and start a fresh one."""
    root = _resolve_root(root)
    _stop(root)
    start_server(root)
    typer.echo(f"Server for {root} starting.")


@app.command()
def server(
    root: Optional[Path] = ROOT_ARGUMENT,
    daemonize: bool = typer.Option(False, "--daemonize", help="Fork to background"),
    idle_timeout: Optional[float] = typer.Option(
        None, "--idle-timeout", help="Shutdown after this many seconds idle (0 = never)"
    ),
) -> None:
    """
    Run the build server in the foreground.

    Lazy import: the server module is only needed by this command.
    """
    from buildlink.daemon.server import run_server

    run_server(_resolve_root(root), idle_timeout=idle_timeout, daemonize=daemonize)


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
