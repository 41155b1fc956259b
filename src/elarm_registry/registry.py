"""
Registry for elarm servers.

The registry tracks which named alarm servers are running and tells its
subscribers when one starts or goes down. It runs as a single asyncio task
draining one inbox, so every request is applied to the tables to completion
before the next one is looked at.

Subscribers receive these messages in their mailbox:

    Started(name, handle)   an alarm server announced itself
    Down(name, handle)      an alarm server stopped or died

Alarm servers are monitored by the registry, so calling server_stopped()
is optional: a server that dies is reported as Down all the same.
Subscribers that die are dropped silently.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .base import BaseService
from .models import ServerEntry, SubscriberEntry, Started, Down
from .process import MonitorRef, ProcessDown, ProcessRef
from .tracker import OsProcessRef, PidWatcher
from .utils.config import RegistryConfig
from .utils.errors import CallTimeoutError, RegistryNotRunningError


# Placeholder meaning "use RegistryConfig.call_timeout"
_CONFIGURED = object()


@dataclass
class _Call:
    """Request that expects a reply."""
    reply: asyncio.Future


@dataclass
class _Subscribe(_Call):
    subscriber: ProcessRef


@dataclass
class _Unsubscribe(_Call):
    subscriber: ProcessRef


@dataclass(frozen=True)
class _ServerStarted:
    name: str
    handle: ProcessRef


@dataclass(frozen=True)
class _ServerStopped:
    name: str
    handle: ProcessRef


class Registry(BaseService):
    """Tracks running alarm servers and notifies subscribers about them."""

    def __init__(self, config: Optional[RegistryConfig] = None):
        self.config = config or RegistryConfig()
        super().__init__(self.config.name)

        self._inbox: Optional[asyncio.Queue] = None
        self._loop_task: Optional[asyncio.Task] = None

        self._servers: Dict[str, ServerEntry] = {}
        self._server_monitors: Dict[str, MonitorRef] = {}
        self._subscribers: Dict[ProcessRef, SubscriberEntry] = {}

        self.pid_watcher = PidWatcher(interval=self.config.pid_poll_interval)

        self._handlers = {
            _Subscribe: self._handle_subscribe,
            _Unsubscribe: self._handle_unsubscribe,
            _ServerStarted: self._handle_server_started,
            _ServerStopped: self._handle_server_stopped,
            ProcessDown: self._handle_process_down,
        }

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    async def subscribe(self, subscriber: ProcessRef, timeout: Any = _CONFIGURED) -> List[ServerEntry]:
        """
        Subscribe to alarm server events.

        The subscriber will get Started and Down messages until it
        unsubscribes or dies. Subscribing again is a no-op.

        Returns:
            The servers running at the time of subscription
        """
        return await self._call(_Subscribe, subscriber, timeout)

    async def unsubscribe(self, subscriber: ProcessRef, timeout: Any = _CONFIGURED) -> None:
        """Unsubscribe from alarm server events. Unknown subscribers are ignored."""
        await self._call(_Unsubscribe, subscriber, timeout)

    def server_started(self, name: str, handle: ProcessRef) -> None:
        """
        An alarm server has to call this when it is started so that
        subscribers learn about it. Does not wait for the registry.
        """
        self.post(_ServerStarted(name, handle))

    def server_stopped(self, name: str, handle: ProcessRef) -> None:
        """
        An alarm server may call this when it terminates. Does not wait for
        the registry.
        """
        self.post(_ServerStopped(name, handle))

    def post(self, message: Any) -> None:
        """Enqueue a message for the registry loop without waiting."""
        if not self.is_running:
            self.logger.warning("message_dropped_not_running", message=repr(message))
            return
        self._inbox.put_nowait(message)

    def os_process(self, pid: int, name: Optional[str] = None, deliver=None) -> OsProcessRef:
        """Handle for an OS process whose liveness this registry polls."""
        return self.pid_watcher.process(pid, name=name, deliver=deliver)

    def servers(self) -> List[ServerEntry]:
        """Copy of the server table."""
        return list(self._servers.values())

    def subscribers(self) -> List[SubscriberEntry]:
        """Copy of the subscriber table."""
        return list(self._subscribers.values())

    @property
    def monitor_count(self) -> int:
        return len(self._server_monitors) + len(self._subscribers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        self._servers.clear()
        self._server_monitors.clear()
        self._subscribers.clear()

    async def _start(self) -> None:
        self._inbox = asyncio.Queue()
        self._loop_task = asyncio.create_task(self._run(), name=f"{self.name}-loop")
        await self.pid_watcher.start()

    async def _stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        # Fail callers still waiting on a reply
        dropped = 0
        while not self._inbox.empty():
            message = self._inbox.get_nowait()
            if isinstance(message, _Call) and not message.reply.done():
                message.reply.set_exception(
                    RegistryNotRunningError(f"{self.name} stopped before replying")
                )
            dropped += 1

        for mref in self._server_monitors.values():
            mref.cancel()
        for entry in self._subscribers.values():
            entry.monitor.cancel()

        self._servers.clear()
        self._server_monitors.clear()
        self._subscribers.clear()

        await self.pid_watcher.stop()
        self.logger.info("registry_cleared", dropped_messages=dropped)

    async def _health_check(self) -> Dict[str, Any]:
        return {
            "servers": len(self._servers),
            "server_table": [entry.to_dict() for entry in self._servers.values()],
            "subscribers": len(self._subscribers),
            "monitors": self.monitor_count,
            "inbox_size": self._inbox.qsize() if self._inbox else 0,
            "pid_watcher": self.pid_watcher.stats(),
        }

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _call(self, request_type, subscriber: ProcessRef, timeout: Any) -> Any:
        if not self.is_running:
            raise RegistryNotRunningError(f"{self.name} is not running")

        if timeout is _CONFIGURED:
            timeout = self.config.call_timeout

        reply = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(request_type(reply=reply, subscriber=subscriber))

        try:
            return await asyncio.wait_for(reply, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CallTimeoutError(
                f"{request_type.__name__.lstrip('_').lower()} call to {self.name} "
                f"timed out after {timeout}s"
            ) from e

    async def _run(self) -> None:
        self.logger.debug("registry_loop_started")
        while True:
            message = await self._inbox.get()
            handler = self._handlers.get(type(message))

            if handler is None:
                self.logger.debug("unknown_message", message=repr(message))
                continue

            try:
                handler(message)
            except Exception as e:
                # One bad message must not take the registry down
                self.logger.error(
                    "message_handling_error",
                    message=repr(message),
                    error=str(e),
                    exc_info=True
                )
                if isinstance(message, _Call) and not message.reply.done():
                    message.reply.set_exception(e)

    def _on_process_down(self, down: ProcessDown) -> None:
        # Monitor callback; runs outside the loop, so only enqueue
        if self._inbox is not None and self.is_running:
            self._inbox.put_nowait(down)

    # ------------------------------------------------------------------
    # Handlers (run inside the loop only)
    # ------------------------------------------------------------------

    def _handle_subscribe(self, request: _Subscribe) -> None:
        subscriber = request.subscriber

        if subscriber not in self._subscribers:
            mref = subscriber.monitor(self._on_process_down)
            self._subscribers[subscriber] = SubscriberEntry(subscriber, mref)
            self.logger.info("subscriber_added", subscriber=repr(subscriber))

        if not request.reply.done():
            request.reply.set_result(self.servers())

    def _handle_unsubscribe(self, request: _Unsubscribe) -> None:
        self._remove_subscriber(request.subscriber)
        if not request.reply.done():
            request.reply.set_result(None)

    def _handle_server_started(self, message: _ServerStarted) -> None:
        name, handle = message.name, message.handle

        # The monitor follows whoever owns the name: the first registration
        existing = self._servers.get(name)
        owner = existing.handle if existing else handle

        old = self._server_monitors.pop(name, None)
        if old is not None:
            old.cancel()
        self._server_monitors[name] = owner.monitor(self._on_process_down)

        if existing is None:
            self._servers[name] = ServerEntry(name, handle)
            self.logger.info("server_started", server=name, handle=repr(handle))
        else:
            self.logger.warning(
                "server_already_registered",
                server=name,
                handle=repr(handle),
                owner=repr(existing.handle)
            )

        self._broadcast(Started(name, handle))

    def _handle_server_stopped(self, message: _ServerStopped) -> None:
        self._server_down(message.name, message.handle)

    def _handle_process_down(self, down: ProcessDown) -> None:
        name = next(
            (n for n, mref in self._server_monitors.items() if mref == down.monitor),
            None
        )
        if name is not None:
            entry = self._servers.get(name)
            self.logger.info("server_died", server=name, reason=down.reason)
            self._server_down(name, entry.handle if entry else down.ref)
            return

        entry = self._subscribers.get(down.ref)
        if entry is not None and entry.monitor == down.monitor:
            self.logger.info(
                "subscriber_died",
                subscriber=repr(down.ref),
                reason=down.reason
            )
            self._remove_subscriber(down.ref)
            return

        # Monitor was cancelled after the event was queued
        self.logger.debug("stale_process_down", ref=repr(down.ref), reason=down.reason)

    def _server_down(self, name: str, handle: ProcessRef) -> None:
        self._servers.pop(name, None)
        mref = self._server_monitors.pop(name, None)
        if mref is not None:
            mref.cancel()

        self.logger.info("server_down", server=name, handle=repr(handle))
        self._broadcast(Down(name, handle))

    def _remove_subscriber(self, subscriber: ProcessRef) -> None:
        entry = self._subscribers.pop(subscriber, None)
        if entry is None:
            return
        entry.monitor.cancel()
        self.logger.info("subscriber_removed", subscriber=repr(subscriber))

    def _broadcast(self, event: Any) -> None:
        for entry in list(self._subscribers.values()):
            try:
                entry.subscriber.send(event)
            except Exception as e:
                self.logger.error(
                    "notification_failed",
                    subscriber=repr(entry.subscriber),
                    notification=repr(event),
                    error=str(e)
                )


async def start_registry(config: Optional[RegistryConfig] = None) -> Registry:
    """Create, initialize and start a registry."""
    registry = Registry(config)
    await registry.initialize()
    await registry.start()
    return registry


__all__ = [
    'Registry',
    'start_registry',
]
