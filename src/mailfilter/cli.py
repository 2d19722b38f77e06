"""Command-line interface.

Usage:
    python -m mailfilter validate-config
    python -m mailfilter login
    python -m mailfilter poll
    python -m mailfilter watch
    python -m mailfilter serve --port 3000
"""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from mailfilter.config import validate_config_file
from mailfilter.core.logging import configure_logging

if TYPE_CHECKING:
    from mailfilter.engine.watcher import PollResult
    from mailfilter.runtime import Runtime

console = Console()


async def _init_runtime() -> Runtime:
    """Load config and build the runtime, exiting with a readable message on failure."""
    from mailfilter.config import get_config
    from mailfilter.core.errors import MailFilterError
    from mailfilter.runtime import build_runtime

    try:
        config = get_config()
    except MailFilterError as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml with at least an [cyan]auth.client_id[/cyan] entry."
        )
        sys.exit(1)

    try:
        return await build_runtime(config)
    except (MailFilterError, ValueError) as e:
        console.print(f"[red]Startup error:[/red] {e}")
        sys.exit(1)


def _run(coro) -> None:
    """Run a command coroutine, mapping errors to exit codes."""
    from mailfilter.core.errors import MailFilterError

    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except MailFilterError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailfilter - sort new mail into important, review and junk."""
    configure_logging(log_level="DEBUG" if debug else "INFO", json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Check config.yaml against the schema and report field errors."""
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")
    is_valid, message = validate_config_file(config_path)
    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    console.print(f"\n[red]✗[/red] {message}")
    sys.exit(1)


@cli.command("login")
def login() -> None:
    """Sign in with the device code flow and create the classification categories."""
    _run(_login())


async def _login() -> None:
    runtime = await _init_runtime()
    username = await asyncio.to_thread(runtime.auth.login)
    created = await runtime.mailbox.ensure_categories()
    console.print(f"[green]✓[/green] Signed in as [cyan]{username}[/cyan]")
    if created:
        console.print(f"  Created categories: {', '.join(created)}")


@cli.command("logout")
def logout() -> None:
    """Remove cached tokens and forget the sync cursor and processed ids."""
    _run(_logout())


async def _logout() -> None:
    runtime = await _init_runtime()
    await runtime.watcher.reset()
    runtime.auth.logout()
    console.print("[green]✓[/green] Logged out; sync state cleared")


@cli.command("poll")
def poll() -> None:
    """Run a single poll cycle and print a summary."""
    _run(_poll_once())


async def _poll_once() -> None:
    runtime = await _init_runtime()
    result = await runtime.watcher.poll()
    _print_poll_summary(result)
    if result.skip_reason == "not_authenticated":
        console.print("[yellow]Not signed in.[/yellow] Run [cyan]mailfilter login[/cyan].")
        sys.exit(1)


def _print_poll_summary(result: PollResult) -> None:
    console.print(f"\n[bold]Poll Cycle Summary[/bold] (cycle {result.cycle_id[:8]}...)")
    console.print(f"  Mode:        {result.mode}")
    if result.skip_reason:
        console.print(f"  Skipped:     {result.skip_reason}")
    if result.sync_expired:
        console.print("  [yellow]Sync token expired; fell back to full sync[/yellow]")
    console.print(f"  Candidates:  {result.candidates}")
    console.print(f"  Classified:  {result.classified}")
    console.print(f"  Skipped ids: {result.skipped}")
    console.print(f"  Failed:      {result.failed}")
    console.print(f"  Abandoned:   {result.abandoned}")
    console.print(f"  Saved:       {result.saved}")
    console.print(f"  Duration:    {result.duration_ms}ms")


@cli.command("watch")
def watch() -> None:
    """Start the watcher and poll until interrupted (Ctrl+C)."""
    _run(_watch())


async def _watch() -> None:
    runtime = await _init_runtime()
    await runtime.watcher.start()
    interval_s = runtime.config.watcher.poll_interval_ms / 1000
    console.print(f"Watcher running every {interval_s:g}s. Press Ctrl+C to stop.")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    await runtime.watcher.stop()
    status = runtime.watcher.status().stats
    console.print(
        f"Stopped. processed={status.total_processed} important={status.important} "
        f"review={status.review} junk={status.junk} errors={status.errors}"
    )


@cli.command("status")
@click.option("--actions", default=10, type=int, help="Recent actions to show")
def status(actions: int) -> None:
    """Show persisted sync state and the most recent classification actions."""
    _run(_status(actions))


async def _status(actions: int) -> None:
    runtime = await _init_runtime()
    state = await runtime.store.load()
    signed_in = await runtime.mailbox.authenticated()

    console.print(f"Signed in:      {'[green]yes[/green]' if signed_in else '[red]no[/red]'}")
    console.print(f"Processed ids:  {len(state.ids)}")
    cursor_text = "present" if state.cursor else "none (next poll is a full sync)"
    console.print(f"Sync cursor:    {cursor_text}")
    console.print(f"Last saved:     {state.saved_at.isoformat() if state.saved_at else 'never'}")

    entries = await runtime.store.recent_actions(limit=actions)
    if not entries:
        return
    table = Table(title="Recent actions")
    table.add_column("Time")
    table.add_column("Category")
    table.add_column("Confidence", justify="right")
    table.add_column("Reason")
    for entry in entries:
        confidence = f"{entry.confidence:.2f}" if entry.confidence is not None else "-"
        table.add_row(entry.timestamp, entry.category, confidence, (entry.reason or "")[:60])
    console.print(table)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only)",
)
@click.option("--port", default=3000, type=int, help="Port to bind to")
def serve(host: str, port: int) -> None:
    """Start the HTTP control surface (and the watcher if watcher.auto_start is set)."""
    import uvicorn

    from mailfilter.config import get_config
    from mailfilter.core.errors import MailFilterError
    from mailfilter.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "The API has no authentication. Use 127.0.0.1 for local-only access."
        )

    try:
        logging_config = get_config().logging
        configure_logging(logging_config.level, json_output=logging_config.json_output)
    except MailFilterError:
        # The app still starts and reports the config error on every route
        configure_logging("INFO", json_output=True)

    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(create_app(), host=host, port=port, log_level="info")


def main() -> None:
    # Console-script entry skips __main__, so load .env here too
    load_dotenv()
    cli()
