"""
elarm-registry - registry of running alarm servers.

This package tracks named alarm server processes and notifies subscribers
when one starts or goes down, whether it says so itself or simply dies.
"""

__version__ = "0.1.0"

from .models import ServerEntry, SubscriberEntry, Started, Down
from .process import Process, ProcessRef, MonitorRef, ProcessDown
from .registry import Registry, start_registry
from .tracker import OsProcessRef, PidWatcher
from .worker import alarm_server, spawn_server

__all__ = [
    'Registry',
    'start_registry',
    'ServerEntry',
    'SubscriberEntry',
    'Started',
    'Down',
    'Process',
    'ProcessRef',
    'MonitorRef',
    'ProcessDown',
    'OsProcessRef',
    'PidWatcher',
    'alarm_server',
    'spawn_server',
]
