"""
Graceful shutdown handling for the elarm registry.

Installs signal handlers that trip an asyncio event, and runs registered
shutdown hooks in order (with a timeout each) once it is tripped.
"""

import asyncio
import signal
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .logging import get_logger


logger = get_logger("elarm.shutdown")


@dataclass
class ShutdownHook:
    """Named hook run during shutdown."""
    name: str
    handler: Callable[[], Any]
    timeout: float = 10.0


class ShutdownManager:
    """Coordinates shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self._hooks: List[ShutdownHook] = []
        self._shutdown_event = asyncio.Event()
        self._original_handlers: Dict[int, Any] = {}
        self._installed: List[int] = []
        self._reason: Optional[str] = None

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def add_hook(self, name: str, handler: Callable[[], Any], timeout: float = 10.0) -> None:
        """Register a hook. Hooks run in registration order."""
        self._hooks.append(ShutdownHook(name=name, handler=handler, timeout=timeout))
        logger.debug("shutdown_hook_registered", hook=name)

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        if sys.platform == "win32":
            for sig in (signal.SIGTERM, signal.SIGINT):
                self._original_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._signal_handler)
        else:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.request_shutdown, signal.Signals(sig).name)
                self._installed.append(sig)

        logger.debug("signal_handlers_installed")

    def restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._installed:
            loop = asyncio.get_running_loop()
            for sig in self._installed:
                loop.remove_signal_handler(sig)
            self._installed.clear()

        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()
        logger.debug("signal_handlers_restored")

    def _signal_handler(self, signum: int, frame: Any) -> None:
        self.request_shutdown(signal.Signals(signum).name)

    def request_shutdown(self, reason: str = "requested") -> None:
        """Trip the shutdown event."""
        if self._shutdown_event.is_set():
            return
        self._reason = reason
        logger.info("shutdown_requested", reason=reason)
        self._shutdown_event.set()

    async def wait(self) -> str:
        """Block until shutdown is requested."""
        await self._shutdown_event.wait()
        return self._reason

    async def run_hooks(self) -> None:
        """Run every hook, logging (not raising) failures and timeouts."""
        for hook in self._hooks:
            try:
                result = hook.handler()
                if asyncio.iscoroutine(result):
                    await asyncio.wait_for(result, timeout=hook.timeout)
                logger.debug("shutdown_hook_complete", hook=hook.name)
            except asyncio.TimeoutError:
                logger.error("shutdown_hook_timeout", hook=hook.name, timeout=hook.timeout)
            except Exception as e:
                logger.error(
                    "shutdown_hook_error",
                    hook=hook.name,
                    error=str(e),
                    exc_info=True
                )


__all__ = [
    'ShutdownManager',
    'ShutdownHook',
]
