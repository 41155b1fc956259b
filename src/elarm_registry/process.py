"""
Process handles for the elarm registry.

A ProcessRef is the opaque handle the registry keeps for workers and
subscribers. It accepts messages without blocking and reports its own death
to monitors, which is all the registry needs to know about a process.

Process is the in-process implementation: a mailbox plus an optional asyncio
task running the process body. When the body returns, raises or is killed,
every monitor fires once with a ProcessDown record.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .utils.logging import get_logger
from .utils.errors import ProcessError

logger = get_logger("elarm.process")

NORMAL = "normal"
KILLED = "killed"
NOPROC = "noproc"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class MonitorRef:
    """Token for one liveness monitor on one process."""
    ref_id: str
    target: "ProcessRef" = field(compare=False, repr=False)

    def cancel(self) -> bool:
        """Cancel this monitor. Returns False if it already fired or was cancelled."""
        return self.target.demonitor(self)


@dataclass(frozen=True)
class ProcessDown:
    """Liveness event delivered to a monitor callback."""
    monitor: MonitorRef
    ref: "ProcessRef"
    reason: str


MonitorCallback = Callable[[ProcessDown], Any]


class ProcessRef(ABC):
    """Opaque handle to a running process."""

    def __init__(self, name: Optional[str] = None):
        self.ref_id = _new_id()
        self.name = name
        self._monitors: Dict[MonitorRef, MonitorCallback] = {}
        self._exit_reason: Optional[str] = None

    @property
    def is_alive(self) -> bool:
        return self._exit_reason is None

    @property
    def exit_reason(self) -> Optional[str]:
        return self._exit_reason

    @property
    def monitor_count(self) -> int:
        return len(self._monitors)

    @abstractmethod
    def send(self, message: Any) -> None:
        """Deliver a message without blocking. Dead processes drop it."""

    def monitor(self, callback: MonitorCallback) -> MonitorRef:
        """
        Watch this process for termination.

        The callback runs exactly once with a ProcessDown record. Monitoring a
        process that has already exited fires on the next loop iteration with
        reason "noproc".
        """
        mref = MonitorRef(ref_id=_new_id(), target=self)

        if not self.is_alive:
            asyncio.get_running_loop().call_soon(
                self._fire, mref, callback, NOPROC
            )
            return mref

        self._monitors[mref] = callback
        self._on_monitored()
        return mref

    def demonitor(self, mref: MonitorRef) -> bool:
        """Cancel a monitor. Returns True if it was still active."""
        removed = self._monitors.pop(mref, None) is not None
        if removed and not self._monitors:
            self._on_unmonitored()
        return removed

    def _on_monitored(self) -> None:
        """Hook for subclasses that need to start watching liveness."""

    def _on_unmonitored(self) -> None:
        """Hook for subclasses when the last monitor goes away."""

    def _terminate(self, reason: str) -> None:
        """Mark the process dead and fire every pending monitor."""
        if self._exit_reason is not None:
            return

        self._exit_reason = reason
        monitors, self._monitors = self._monitors, {}

        logger.debug(
            "process_exited",
            process=repr(self),
            reason=reason,
            monitors=len(monitors)
        )

        for mref, callback in monitors.items():
            self._fire(mref, callback, reason)

        if monitors:
            self._on_unmonitored()

    def _fire(self, mref: MonitorRef, callback: MonitorCallback, reason: str) -> None:
        try:
            callback(ProcessDown(monitor=mref, ref=self, reason=reason))
        except Exception as e:
            logger.error(
                "monitor_callback_error",
                process=repr(self),
                monitor=mref.ref_id,
                error=str(e),
                exc_info=True
            )

    def __repr__(self) -> str:
        label = f"{self.name}:" if self.name else ""
        state = "" if self.is_alive else f" exited={self._exit_reason}"
        return f"<{type(self).__name__} {label}{self.ref_id}{state}>"


class Process(ProcessRef):
    """
    In-process actor: an unbounded mailbox and an optional task body.

    The body is a coroutine function called with the process itself as its
    first argument. A Process created without a body stays alive until
    close() or kill() is called, which is how plain coroutines (and tests)
    get a mailbox of their own.
    """

    def __init__(self, name: Optional[str] = None):
        super().__init__(name=name)
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._exited = asyncio.Event()
        # Reason passed to close()/kill() while the body was still running
        self._stop_reason: Optional[str] = None

    @classmethod
    def spawn(
        cls,
        target: Callable[..., Awaitable[Any]],
        *args: Any,
        name: Optional[str] = None
    ) -> "Process":
        """Create a process and start running target(process, *args)."""
        process = cls(name=name)
        process.start(target, *args)
        return process

    def start(self, target: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """Run the process body as an asyncio task."""
        if self._task is not None:
            raise ProcessError(f"{self!r} already has a running body")
        if not self.is_alive:
            raise ProcessError(f"{self!r} has already exited")

        self._task = asyncio.create_task(
            target(self, *args),
            name=f"process-{self.name or self.ref_id}"
        )
        self._task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            reason = self._stop_reason or KILLED
        elif task.exception() is not None:
            exc = task.exception()
            reason = repr(exc)
            logger.warning(
                "process_crashed",
                process=repr(self),
                error=str(exc),
                error_type=type(exc).__name__
            )
        else:
            reason = self._stop_reason or NORMAL
        self._terminate(reason)

    def _terminate(self, reason: str) -> None:
        super()._terminate(reason)
        self._exited.set()

    def send(self, message: Any) -> None:
        if self.is_alive:
            self._mailbox.put_nowait(message)

    async def receive(self, timeout: Optional[float] = None) -> Any:
        """
        Take the next message from the mailbox.

        Returns None if nothing arrives within timeout seconds.
        """
        try:
            return await asyncio.wait_for(self._mailbox.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def flush(self) -> List[Any]:
        """Remove and return every message currently queued."""
        messages = []
        while not self._mailbox.empty():
            messages.append(self._mailbox.get_nowait())
        return messages

    @property
    def pending(self) -> int:
        return self._mailbox.qsize()

    def kill(self) -> None:
        """Terminate the process with reason "killed"."""
        self.close(KILLED)

    def close(self, reason: str = NORMAL) -> None:
        """
        Terminate the process with the given reason.

        A running body is cancelled first; monitors fire once it has
        finished, so its finally blocks run while it is still alive.
        Without a running body the process terminates immediately.
        """
        if self._task is not None and not self._task.done():
            if self._stop_reason is None:
                self._stop_reason = reason
            self._task.cancel()
        else:
            self._terminate(reason)

    async def wait(self) -> str:
        """Wait until the process has exited and return its exit reason."""
        await self._exited.wait()
        return self._exit_reason


__all__ = [
    'ProcessRef',
    'Process',
    'MonitorRef',
    'ProcessDown',
    'NORMAL',
    'KILLED',
    'NOPROC',
]
