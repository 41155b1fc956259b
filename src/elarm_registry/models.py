"""
Data model for the elarm registry.

Table entries kept by the registry and the notifications it sends to
subscribers.
"""

from dataclasses import dataclass
from typing import Any, Dict, TYPE_CHECKING

if TYPE_CHECKING:
    from .process import MonitorRef, ProcessRef


@dataclass(frozen=True)
class ServerEntry:
    """A running alarm server: logical name plus the process owning it."""
    name: str
    handle: "ProcessRef"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "handle": repr(self.handle),
        }


@dataclass(frozen=True)
class SubscriberEntry:
    """A subscriber and the monitor watching it."""
    subscriber: "ProcessRef"
    monitor: "MonitorRef"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "subscriber": repr(self.subscriber),
            "monitor": self.monitor.ref_id,
        }


@dataclass(frozen=True)
class Started:
    """Sent to subscribers when an alarm server announces itself."""
    name: str
    handle: "ProcessRef"


@dataclass(frozen=True)
class Down:
    """Sent to subscribers when an alarm server stops or dies."""
    name: str
    handle: "ProcessRef"


__all__ = [
    'ServerEntry',
    'SubscriberEntry',
    'Started',
    'Down',
]
