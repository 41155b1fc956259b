"""
Tests for OS process tracking.
"""

import os
import pytest

from elarm_registry.models import Down, Started
from elarm_registry.process import NOPROC
from elarm_registry.tracker import EXITED, OsProcessRef, PidWatcher
from tests.fixtures.registry_fixtures import RegistryFixtures
from tests.utils.async_helpers import wait_for_condition


@pytest.fixture
def sleeper():
    """A sleeping OS process, killed at teardown."""
    proc = RegistryFixtures.spawn_sleeper()
    yield proc
    if proc.poll() is None:
        proc.kill()
        proc.wait()


class TestOsProcessRef:
    """Test liveness of a single OS process handle."""

    def test_own_process_is_alive(self):
        ref = OsProcessRef(os.getpid(), name="self")

        assert ref.is_alive
        assert ref.check_alive()
        assert ref.create_time is not None

    def test_missing_pid_is_noproc(self):
        ref = OsProcessRef(RegistryFixtures.dead_pid())

        assert not ref.is_alive
        assert ref.exit_reason == NOPROC

    def test_reused_pid_detected(self):
        ref = OsProcessRef(os.getpid())
        ref.create_time -= 100

        assert not ref.check_alive()
        assert ref.poll() is False
        assert ref.exit_reason == EXITED

    def test_killed_process_detected(self, sleeper):
        ref = OsProcessRef(sleeper.pid)
        assert ref.poll()

        sleeper.kill()
        sleeper.wait()

        assert ref.poll() is False
        assert ref.exit_reason == EXITED

    def test_send_uses_deliver(self):
        received = []
        ref = OsProcessRef(os.getpid(), deliver=received.append)

        ref.send("hello")

        assert received == ["hello"]

    def test_send_without_deliver_is_dropped(self):
        OsProcessRef(os.getpid()).send("nowhere")

    def test_failing_deliver_is_logged(self):
        def deliver(message):
            raise BrokenPipeError("closed")

        OsProcessRef(os.getpid(), deliver=deliver).send("hello")

    def test_repr(self):
        ref = OsProcessRef(os.getpid(), name="self")
        assert repr(ref) == f"<OsProcessRef self:pid={os.getpid()}>"


class TestPidWatcher:
    """Test polling of watched processes."""

    def test_monitor_registers_with_watcher(self):
        watcher = PidWatcher(interval=0.05)
        ref = watcher.process(os.getpid())

        mref = ref.monitor(lambda down: None)
        assert watcher.watched == 1

        mref.cancel()
        assert watcher.watched == 0

    def test_poll_once_terminates_dead(self, sleeper):
        watcher = PidWatcher()
        ref = watcher.process(sleeper.pid, name="sleeper")
        events = []
        ref.monitor(events.append)

        assert watcher.poll_once() == []

        sleeper.kill()
        sleeper.wait()

        assert watcher.poll_once() == [ref]
        assert [e.reason for e in events] == [EXITED]
        assert watcher.watched == 0

    @pytest.mark.asyncio
    async def test_background_polling(self, sleeper):
        watcher = PidWatcher(interval=0.05)
        await watcher.start()
        try:
            assert watcher.is_running
            ref = watcher.process(sleeper.pid)
            events = []
            ref.monitor(events.append)

            sleeper.kill()
            sleeper.wait()

            await wait_for_condition(lambda: events, timeout=5.0)
            assert events[0].reason == EXITED
        finally:
            await watcher.stop()

        assert not watcher.is_running
        assert watcher.watched == 0

    @pytest.mark.asyncio
    async def test_stats(self):
        watcher = PidWatcher(interval=0.5)
        watcher.process(os.getpid()).monitor(lambda down: None)

        stats = watcher.stats()

        assert stats == {"watched": 1, "pids": [os.getpid()], "interval": 0.5}


@pytest.mark.slow
class TestRegistryIntegration:
    """OS processes as alarm servers and subscribers."""

    @pytest.mark.asyncio
    async def test_os_process_server_reported_down(self, registry, subscriber, sleeper):
        await registry.subscribe(subscriber)
        server = registry.os_process(sleeper.pid, name="sleeper")

        registry.server_started("sleeper", server)
        assert await subscriber.receive(timeout=1.0) == Started("sleeper", server)

        sleeper.kill()
        sleeper.wait()

        assert await subscriber.receive(timeout=5.0) == Down("sleeper", server)
        assert registry.servers() == []

    @pytest.mark.asyncio
    async def test_os_process_subscriber(self, registry, make_process, sleeper):
        received = []
        remote = registry.os_process(sleeper.pid, deliver=received.append)
        await registry.subscribe(remote)

        worker = make_process("worker")
        registry.server_started("test", worker)
        await wait_for_condition(lambda: received, timeout=1.0)
        assert received == [Started("test", worker)]

        sleeper.kill()
        sleeper.wait()

        await wait_for_condition(lambda: not registry.subscribers(), timeout=5.0)
