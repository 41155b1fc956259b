"""
Tests for alarm server helpers.
"""

import asyncio
import pytest

from elarm_registry.models import Down, ServerEntry, Started
from elarm_registry.process import KILLED, NORMAL, Process
from elarm_registry.worker import alarm_server, idle, spawn_server
from tests.utils.async_helpers import collect, drain


class TestAlarmServer:
    """Test the alarm_server context manager."""

    @pytest.mark.asyncio
    async def test_announces_and_says_goodbye(self, registry, subscriber, make_process):
        await registry.subscribe(subscriber)
        worker = make_process("worker")

        async with alarm_server(registry, "test", worker) as handle:
            assert handle is worker
            await drain(registry)
            assert registry.servers() == [ServerEntry("test", worker)]

        await drain(registry)
        assert subscriber.flush() == [Started("test", worker), Down("test", worker)]
        assert registry.servers() == []

    @pytest.mark.asyncio
    async def test_goodbye_on_error(self, registry, subscriber, make_process):
        await registry.subscribe(subscriber)
        worker = make_process("worker")

        with pytest.raises(ValueError):
            async with alarm_server(registry, "test", worker):
                raise ValueError("failed")

        await drain(registry)
        assert subscriber.flush() == [Started("test", worker), Down("test", worker)]


class TestSpawnServer:
    """Test spawned alarm server processes."""

    @pytest.mark.asyncio
    async def test_spawn_and_kill(self, registry, subscriber):
        """One Down per kill: the goodbye arrives first, the death is then stale."""
        await registry.subscribe(subscriber)

        server = spawn_server(registry, "test")
        assert await subscriber.receive(timeout=1.0) == Started("test", server)

        server.kill()
        assert await server.wait() == KILLED
        await drain(registry)

        assert subscriber.flush() == [Down("test", server)]
        assert registry.servers() == []
        assert registry.monitor_count == 1

    @pytest.mark.asyncio
    async def test_body_runs_with_args(self, registry, subscriber):
        async def body(process, reply_to, greeting):
            await asyncio.sleep(0.05)
            reply_to.send(greeting)

        await registry.subscribe(subscriber)
        server = spawn_server(registry, "greeter", body, subscriber, "hi")

        assert await server.wait() == NORMAL
        await drain(registry)

        assert subscriber.flush() == [
            Started("greeter", server),
            "hi",
            Down("greeter", server),
        ]

    @pytest.mark.asyncio
    async def test_unsubscribed_client_hears_nothing(self, registry, subscriber):
        await registry.subscribe(subscriber)
        await registry.unsubscribe(subscriber)

        server = spawn_server(registry, "test2")
        await asyncio.sleep(0)
        await drain(registry)

        assert await collect(subscriber) == []
        server.kill()
        await server.wait()

    @pytest.mark.asyncio
    async def test_close_says_goodbye_before_dying(self, registry, subscriber):
        """close() lets the goodbye go out first, so the death is not reported again."""
        await registry.subscribe(subscriber)

        server = spawn_server(registry, "test")
        assert await subscriber.receive(timeout=1.0) == Started("test", server)

        server.close("shutdown")
        assert server.is_alive
        assert await server.wait() == "shutdown"
        await drain(registry)

        assert subscriber.flush() == [Down("test", server)]
        assert registry.servers() == []
        assert registry.monitor_count == 1


class TestIdle:
    """Test the default server body."""

    @pytest.mark.asyncio
    async def test_idle_consumes_messages_until_killed(self):
        process = Process.spawn(idle, name="idle")
        process.send("ping")
        process.send("pong")
        await asyncio.sleep(0.01)

        assert process.is_alive
        assert process.pending == 0

        process.kill()
        assert await process.wait() == KILLED
