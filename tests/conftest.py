"""
Pytest configuration and shared fixtures for elarm registry tests.
"""

import pytest
from pathlib import Path
from typing import AsyncGenerator, Callable, List

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from elarm_registry.process import Process
from elarm_registry.registry import Registry
from elarm_registry.utils.config import RegistryConfig


# Test configuration
TEST_REGISTRY_CONFIG = {
    "name": "test_registry",
    "call_timeout": 2.0,
    "pid_poll_interval": 0.05,
}


@pytest.fixture
def registry_config() -> RegistryConfig:
    """Registry configuration with short timeouts."""
    return RegistryConfig(**TEST_REGISTRY_CONFIG)


@pytest.fixture
async def registry(registry_config: RegistryConfig) -> AsyncGenerator[Registry, None]:
    """A running registry."""
    registry = Registry(registry_config)
    await registry.initialize()
    await registry.start()
    yield registry
    await registry.stop()


@pytest.fixture
async def make_process() -> AsyncGenerator[Callable[..., Process], None]:
    """Factory for bodiless processes, closed at teardown."""
    created: List[Process] = []

    def factory(name: str = None) -> Process:
        process = Process(name=name)
        created.append(process)
        return process

    yield factory

    for process in created:
        process.close()


@pytest.fixture
async def subscriber(make_process) -> Process:
    """A process to subscribe with."""
    return make_process("subscriber")
