"""
Operating-system process tracking for the elarm registry.

OsProcessRef lets an external process (identified by pid) take part in the
registry as a worker or subscriber. Its liveness is checked by a PidWatcher,
which polls psutil and terminates refs whose process has gone away.
"""

import asyncio
import os
from typing import Any, Callable, Dict, List, Optional, Set

import psutil

from .process import ProcessRef, NOPROC
from .utils.logging import get_logger

logger = get_logger("elarm.tracker")

EXITED = "exited"

# Allowed skew when comparing psutil create times
_CREATE_TIME_TOLERANCE = 1.0


class OsProcessRef(ProcessRef):
    """Handle for an operating-system process."""

    def __init__(
        self,
        pid: int,
        name: Optional[str] = None,
        deliver: Optional[Callable[[Any], None]] = None,
        watcher: Optional["PidWatcher"] = None
    ):
        """
        Args:
            pid: Process ID
            name: Optional label used in logs
            deliver: Callable receiving messages sent to this process
            watcher: PidWatcher that polls liveness while monitored
        """
        super().__init__(name=name)
        self.pid = pid
        self.hostname = os.uname().nodename
        self.create_time: Optional[float] = None
        self._deliver = deliver
        self._watcher = watcher

        try:
            self.create_time = psutil.Process(pid).create_time()
        except psutil.NoSuchProcess:
            self._terminate(NOPROC)
        except psutil.AccessDenied:
            logger.debug("create_time_unavailable", pid=pid)

    def check_alive(self) -> bool:
        """Whether the original process (not a reused pid) is still running."""
        try:
            process = psutil.Process(self.pid)
            if process.status() in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD):
                return False
            if self.create_time is not None:
                # Different process with same PID
                if abs(process.create_time() - self.create_time) > _CREATE_TIME_TOLERANCE:
                    return False
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return psutil.pid_exists(self.pid)

    def poll(self) -> bool:
        """Refresh liveness, firing monitors if the process is gone."""
        if self.is_alive and not self.check_alive():
            self._terminate(EXITED)
        return self.is_alive

    def send(self, message: Any) -> None:
        if not self.is_alive or self._deliver is None:
            return
        try:
            self._deliver(message)
        except Exception as e:
            logger.error(
                "delivery_failed",
                pid=self.pid,
                message=repr(message),
                error=str(e),
                exc_info=True
            )

    def _on_monitored(self) -> None:
        if self._watcher is not None:
            self._watcher.watch(self)

    def _on_unmonitored(self) -> None:
        if self._watcher is not None:
            self._watcher.unwatch(self)

    def __repr__(self) -> str:
        label = f"{self.name}:" if self.name else ""
        state = "" if self.is_alive else f" exited={self.exit_reason}"
        return f"<OsProcessRef {label}pid={self.pid}{state}>"


class PidWatcher:
    """Polls watched OsProcessRefs and terminates the ones that died."""

    def __init__(self, interval: float = 1.0):
        """
        Args:
            interval: Seconds between polls
        """
        self.interval = interval
        self._refs: Set[OsProcessRef] = set()
        self._tracking_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def watched(self) -> int:
        return len(self._refs)

    @property
    def is_running(self) -> bool:
        return self._tracking_task is not None and not self._tracking_task.done()

    def watch(self, ref: OsProcessRef) -> None:
        self._refs.add(ref)

    def unwatch(self, ref: OsProcessRef) -> None:
        self._refs.discard(ref)

    def process(
        self,
        pid: int,
        name: Optional[str] = None,
        deliver: Optional[Callable[[Any], None]] = None
    ) -> OsProcessRef:
        """Create an OsProcessRef polled by this watcher."""
        return OsProcessRef(pid, name=name, deliver=deliver, watcher=self)

    def poll_once(self) -> List[OsProcessRef]:
        """Check every watched process once. Returns the ones found dead."""
        dead = []
        for ref in list(self._refs):
            if not ref.poll():
                dead.append(ref)
                self._refs.discard(ref)

        if dead:
            logger.info(
                "dead_processes_found",
                count=len(dead),
                pids=[ref.pid for ref in dead]
            )
        return dead

    async def start(self) -> None:
        """Start background polling."""
        if self.is_running:
            logger.warning("pid_watcher_already_running")
            return

        self._stop_event.clear()
        self._tracking_task = asyncio.create_task(self._tracking_loop())
        logger.debug("pid_watcher_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop background polling."""
        if not self._tracking_task:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._tracking_task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("pid_watcher_stop_timeout")
            self._tracking_task.cancel()

        self._tracking_task = None
        self._refs.clear()
        logger.debug("pid_watcher_stopped")

    def stats(self) -> Dict[str, Any]:
        return {
            "watched": self.watched,
            "pids": sorted(ref.pid for ref in self._refs),
            "interval": self.interval,
        }

    async def _tracking_loop(self) -> None:
        """Background polling loop."""
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error("pid_watcher_error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.interval
                )
            except asyncio.TimeoutError:
                continue


__all__ = [
    'OsProcessRef',
    'PidWatcher',
    'EXITED',
]
