"""
Worker-side helpers for alarm servers.

An alarm server announces itself to the registry when it starts and, when it
can, says goodbye before it exits. Dying without a goodbye is fine too: the
registry monitors every announced server.
"""

from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from .process import Process, ProcessRef
from .registry import Registry


@asynccontextmanager
async def alarm_server(registry: Registry, name: str, process: ProcessRef):
    """Announce `process` as alarm server `name` for the duration of the block."""
    registry.server_started(name, process)
    try:
        yield process
    finally:
        registry.server_stopped(name, process)


async def idle(process: Process) -> None:
    """Server body that runs until the process is killed or closed."""
    while True:
        await process.receive()


async def _serve(
    process: Process,
    registry: Registry,
    name: str,
    body: Callable[..., Awaitable[Any]],
    args: tuple
) -> None:
    async with alarm_server(registry, name, process):
        await body(process, *args)


def spawn_server(
    registry: Registry,
    name: str,
    body: Optional[Callable[..., Awaitable[Any]]] = None,
    *args: Any
) -> Process:
    """
    Spawn a Process registered as alarm server `name`.

    body(process, *args) runs inside alarm_server(); it defaults to idle().
    """
    return Process.spawn(_serve, registry, name, body or idle, args, name=name)


__all__ = [
    'alarm_server',
    'spawn_server',
    'idle',
]
