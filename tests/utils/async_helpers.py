"""
Async testing helpers.
"""

import asyncio
from typing import Any, Callable, List

from elarm_registry.process import Process
from elarm_registry.registry import Registry


async def wait_for_condition(
    condition: Callable[[], bool],
    timeout: float = 5.0,
    interval: float = 0.02,
    message: str = "Condition not met"
) -> None:
    """Wait for a sync condition to become true."""
    loop = asyncio.get_running_loop()
    start = loop.time()

    while loop.time() - start < timeout:
        if condition():
            return
        await asyncio.sleep(interval)

    raise TimeoutError(f"{message} after {timeout}s")


async def drain(registry: Registry) -> None:
    """
    Wait until the registry has handled everything queued so far.

    The inbox is FIFO, so the reply to a no-op call arrives only after every
    earlier message was processed.
    """
    barrier = Process(name="barrier")
    await registry.unsubscribe(barrier)
    barrier.close()


async def collect(process: Process, timeout: float = 0.1) -> List[Any]:
    """Receive messages until none arrives within timeout."""
    messages = []
    while True:
        message = await process.receive(timeout=timeout)
        if message is None:
            return messages
        messages.append(message)
