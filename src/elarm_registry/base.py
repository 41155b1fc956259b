"""
Base service class for the elarm registry.

This module provides the lifecycle shared by long-running components:
- Ordered state transitions (initialize/start/stop)
- Lifecycle event handlers
- Health checking
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Callable
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .utils.logging import get_logger
from .utils.errors import (
    RegistryError,
    RegistryNotRunningError,
    RegistryAlreadyRunningError,
)


class ServiceState(Enum):
    """Service lifecycle states."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class HealthStatus:
    """Health status information."""
    healthy: bool
    last_check: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class BaseService(ABC):
    """
    Abstract base class for long-running components.

    Subclasses implement _initialize, _start, _stop and _health_check;
    this class enforces the state machine around them.
    """

    def __init__(self, name: str):
        """Initialize base service."""
        self.name = name
        self.logger = get_logger(f"elarm.{name}")
        self.state = ServiceState.UNINITIALIZED
        self._event_handlers: Dict[str, List[Callable]] = {}
        self._health_status = HealthStatus(
            healthy=True, last_check=datetime.now(timezone.utc)
        )

    @property
    def is_ready(self) -> bool:
        """Check if service is ready for operations."""
        return self.state in (ServiceState.READY, ServiceState.RUNNING)

    @property
    def is_running(self) -> bool:
        """Check if service is actively running."""
        return self.state == ServiceState.RUNNING

    async def initialize(self) -> None:
        """Initialize the service and transition to READY."""
        if self.state != ServiceState.UNINITIALIZED:
            raise RegistryError(f"Cannot initialize {self.name} from state: {self.state.value}")

        self.state = ServiceState.INITIALIZING
        self.logger.info("initializing_service")

        try:
            await self._initialize()
            self.state = ServiceState.READY
            self.logger.info("service_initialized")
            await self._notify_event("initialized", {"service": self.name})

        except Exception as e:
            self.state = ServiceState.ERROR
            self.logger.error("initialization_failed", error=str(e), exc_info=True)
            raise RegistryError(f"Failed to initialize {self.name}: {e}", cause=e) from e

    async def start(self) -> None:
        """Start the service."""
        if self.is_running:
            raise RegistryAlreadyRunningError(f"{self.name} already running")

        if not self.is_ready:
            raise RegistryNotRunningError(
                f"{self.name} not ready (state: {self.state.value})"
            )

        self.state = ServiceState.STARTING
        self.logger.info("starting_service")

        try:
            await self._start()
            self.state = ServiceState.RUNNING
            self.logger.info("service_started")
            await self._notify_event("started", {"service": self.name})

        except Exception as e:
            self.state = ServiceState.ERROR
            self.logger.error("start_failed", error=str(e), exc_info=True)
            raise RegistryError(f"Failed to start {self.name}: {e}", cause=e) from e

    async def stop(self) -> None:
        """Stop the service gracefully. Stopping twice is a no-op."""
        if not self.is_running:
            self.logger.debug("stop_called_when_not_running", state=self.state.value)
            return

        self.state = ServiceState.STOPPING
        self.logger.info("stopping_service")

        try:
            await self._stop()
            self.state = ServiceState.STOPPED
            self.logger.info("service_stopped")
            await self._notify_event("stopped", {"service": self.name})

        except Exception as e:
            self.state = ServiceState.ERROR
            self.logger.error("stop_failed", error=str(e), exc_info=True)
            raise RegistryError(f"Failed to stop {self.name}: {e}", cause=e) from e

    async def health_check(self) -> HealthStatus:
        """Return the current health status of the service."""
        try:
            details = await self._health_check()
            self._health_status = HealthStatus(
                healthy=self.is_running,
                last_check=datetime.now(timezone.utc),
                details=details
            )
        except Exception as e:
            self._health_status = HealthStatus(
                healthy=False,
                last_check=datetime.now(timezone.utc),
                error=str(e)
            )
            self.logger.error("health_check_failed", error=str(e))

        return self._health_status

    def register_event_handler(self, event: str, handler: Callable) -> None:
        """Register a lifecycle event handler."""
        self._event_handlers.setdefault(event, []).append(handler)
        self.logger.debug("event_handler_registered", event_type=event)

    def unregister_event_handler(self, event: str, handler: Callable) -> None:
        """Unregister a lifecycle event handler."""
        if handler in self._event_handlers.get(event, []):
            self._event_handlers[event].remove(handler)
            self.logger.debug("event_handler_unregistered", event_type=event)

    async def _notify_event(self, event: str, data: Dict[str, Any]) -> None:
        """Notify all handlers of a lifecycle event."""
        for handler in list(self._event_handlers.get(event, [])):
            try:
                result = handler(event, data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(
                    "event_handler_error",
                    event_type=event,
                    handler=getattr(handler, '__name__', repr(handler)),
                    error=str(e)
                )

    async def __aenter__(self):
        if self.state == ServiceState.UNINITIALIZED:
            await self.initialize()
        if not self.is_running:
            await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Abstract methods to be implemented by subclasses

    @abstractmethod
    async def _initialize(self) -> None:
        """Component-specific initialization logic."""
        pass

    @abstractmethod
    async def _start(self) -> None:
        """Component-specific start logic."""
        pass

    @abstractmethod
    async def _stop(self) -> None:
        """Component-specific stop logic."""
        pass

    @abstractmethod
    async def _health_check(self) -> Dict[str, Any]:
        """Component-specific health check details."""
        pass


__all__ = [
    'BaseService',
    'ServiceState',
    'HealthStatus',
]
