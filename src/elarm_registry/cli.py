"""
Command line entry point for the elarm registry.

`elarm-registry run` hosts a registry, optionally registers already-running
OS processes as alarm servers, and prints every Started/Down event until it
is interrupted.
"""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape

from . import __version__
from .models import Down, Started
from .process import Process
from .registry import Registry
from .utils.config import ElarmConfig, load_config
from .utils.errors import ElarmError, ErrorSeverity, handle_errors
from .utils.logging import get_logger, setup_logging
from .utils.shutdown import ShutdownManager

logger = get_logger("elarm.cli")

Watch = Tuple[str, int]


def parse_watch(value: str) -> Watch:
    """Parse a NAME=PID pair."""
    name, sep, pid = value.partition("=")
    if not sep or not name.strip():
        raise click.BadParameter(f"expected NAME=PID, got {value!r}")
    try:
        pid_value = int(pid)
    except ValueError:
        raise click.BadParameter(f"PID must be an integer, got {pid!r}")
    if pid_value <= 0:
        raise click.BadParameter(f"PID must be positive, got {pid_value}")
    return name.strip(), pid_value


def _parse_watches(ctx, param, values) -> List[Watch]:
    return [parse_watch(value) for value in values]


def format_event(event) -> Optional[str]:
    """Rich markup for a registry notification, None for anything else."""
    if isinstance(event, Started):
        return f"[green]started[/green] {escape(event.name)} {escape(repr(event.handle))}"
    if isinstance(event, Down):
        return f"[red]down[/red]    {escape(event.name)} {escape(repr(event.handle))}"
    return None


@handle_errors(reraise=False, log_level=ErrorSeverity.WARNING)
def _print_event(console: Console, event) -> None:
    line = format_event(event)
    if line is not None:
        console.print(line)


async def _print_events(listener: Process, console: Console) -> None:
    while True:
        _print_event(console, await listener.receive())


async def serve(
    config: ElarmConfig,
    watches: List[Watch],
    console: Optional[Console] = None,
    shutdown: Optional[ShutdownManager] = None
) -> None:
    """Run a registry until shutdown is requested."""
    console = console or Console()
    shutdown = shutdown or ShutdownManager()

    async with Registry(config.registry) as registry:
        listener = Process(name="console")
        printer = asyncio.create_task(_print_events(listener, console))

        shutdown.add_hook("unsubscribe", lambda: registry.unsubscribe(listener))
        shutdown.add_hook("listener", listener.close)
        shutdown.add_hook("printer", printer.cancel)

        running = await registry.subscribe(listener)
        for entry in running:
            console.print(f"[cyan]running[/cyan] {escape(entry.name)} {escape(repr(entry.handle))}")

        for name, pid in watches:
            ref = registry.os_process(pid, name=name)
            if not ref.is_alive:
                logger.warning("watched_process_missing", server=name, pid=pid)
            registry.server_started(name, ref)

        shutdown.setup_signal_handlers()
        console.print(f"[bold]{registry.name}[/bold] running, Ctrl+C to stop")
        try:
            reason = await shutdown.wait()
            logger.info("shutting_down", reason=reason)
        finally:
            shutdown.restore_signal_handlers()
            await shutdown.run_hooks()


@click.group()
@click.version_option(__version__, prog_name="elarm-registry")
def main():
    """Elarm registry - tracks alarm servers and notifies subscribers."""


@main.command()
@click.option('--config', 'config_path',
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='Configuration file (YAML, JSON or TOML)')
@click.option('--log-level',
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                                case_sensitive=False),
              help='Override the configured log level')
@click.option('--watch', 'watches', multiple=True, callback=_parse_watches,
              metavar='NAME=PID', help='Register a running OS process as an alarm server')
def run(config_path: Optional[Path], log_level: Optional[str], watches: List[Watch]):
    """Host a registry and print alarm server events."""
    extra = {"logging": {"level": log_level}} if log_level else None

    try:
        config = load_config([config_path] if config_path else None, extra)
    except ElarmError as e:
        raise click.ClickException(e.message)

    setup_logging(
        app_name=config.app_name,
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
    )

    try:
        asyncio.run(serve(config, watches))
    except KeyboardInterrupt:
        logger.info("interrupted")
    except ElarmError as e:
        logger.error("registry_error", error=e.to_dict())
        sys.exit(1)


if __name__ == "__main__":
    main()
