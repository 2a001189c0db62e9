"""Tests for the JvmMonitor polling loop."""

import time
from queue import Queue

import pytest

from conftest import FakeClock, FakeConnection, FakeDiscovery, FakeProvider, descriptor, jvm_objects
from jvmtop.connection import THREADING
from jvmtop.errors import DiscoveryError
from jvmtop.models import DetailCycle, OverviewCycle
from jvmtop.monitor import JvmMonitor
from jvmtop.ranking import SortKey
from jvmtop.state import ConnectionState


def overview_monitor(**kwargs) -> tuple[JvmMonitor, FakeDiscovery]:
    connections = {
        1: FakeConnection(jvm_objects(heap_used=300)),
        2: FakeConnection(jvm_objects(heap_used=100)),
    }
    discovery = FakeDiscovery([descriptor(1), descriptor(2), descriptor(3, attachable=False)])
    monitor = JvmMonitor(discovery, FakeProvider(connections), clock=FakeClock(), **kwargs)
    return monitor, discovery


class TestJvmMonitor:
    """Tests for JvmMonitor configuration and lifecycle."""

    def test_monitor_creation(self):
        """Test JvmMonitor can be instantiated."""
        monitor, _ = overview_monitor()

        assert monitor.poll_rate == 1.0
        assert not monitor.is_running
        assert monitor.latest is None

    def test_poll_rate_minimum(self):
        """Test poll rate has a minimum value."""
        monitor, _ = overview_monitor()

        monitor.poll_rate = 0.01  # Very small value
        assert monitor.poll_rate >= 0.1  # Should be clamped to minimum

    def test_monitor_start_stop(self):
        """Test JvmMonitor can be started and stopped."""
        monitor = JvmMonitor(FakeDiscovery(), FakeProvider(), poll_rate=0.1)

        monitor.start()
        assert monitor.is_running

        monitor.stop()
        assert not monitor.is_running

    def test_monitor_start_idempotent(self):
        """Test starting an already running monitor is safe."""
        monitor = JvmMonitor(FakeDiscovery(), FakeProvider(), poll_rate=0.1)

        monitor.start()
        thread1 = monitor._thread

        monitor.start()  # Should not create a new thread
        thread2 = monitor._thread

        assert thread1 is thread2
        monitor.stop()

    def test_monitor_publishes_to_queue(self):
        """Test the background thread pushes cycles to the queue."""
        queue: Queue = Queue()
        monitor = JvmMonitor(FakeDiscovery([descriptor(1)]), FakeProvider({1: FakeConnection()}), queue, poll_rate=0.1)

        monitor.start()
        try:
            cycle = queue.get(timeout=2.0)
            assert isinstance(cycle, OverviewCycle)
            assert [row.identity for row in cycle.rows] == [1]
        finally:
            monitor.stop()

    def test_discovery_failure_is_fatal(self, broken_discovery):
        """Test the loop stops and records the error when discovery is unusable."""
        monitor = JvmMonitor(broken_discovery, FakeProvider(), poll_rate=0.1)

        monitor.start()
        deadline = time.time() + 2.0
        while monitor.is_running and time.time() < deadline:
            time.sleep(0.01)

        assert not monitor.is_running
        assert isinstance(monitor.fatal_error, DiscoveryError)

    def test_unexpected_discovery_errors_are_wrapped(self):
        """Test provider bugs surface as DiscoveryError."""
        monitor = JvmMonitor(FakeDiscovery(error=RuntimeError("bug")), FakeProvider())

        with pytest.raises(DiscoveryError):
            monitor.poll_once()


class TestOverview:
    """Tests for overview cycles."""

    def test_poll_once_sorts_rows(self):
        """Test every visible JVM is listed, attached or not, in sort order."""
        monitor, _ = overview_monitor(sort_key=SortKey.HEAP)

        cycle = monitor.poll_once()

        assert isinstance(cycle, OverviewCycle)
        assert [row.identity for row in cycle.rows] == [3, 2, 1]
        assert cycle.rows[0].state is ConnectionState.ERROR_DURING_ATTACH
        assert cycle.rows[1].state is ConnectionState.ATTACHED
        assert cycle.timestamp == 1000.0
        assert monitor.latest is cycle

    def test_rescan_interval(self):
        """Test discovery only runs every n-th cycle."""
        monitor, discovery = overview_monitor(rescan_every=3)

        for _ in range(4):
            monitor.poll_once()

        assert discovery.calls == 2

    def test_new_jvms_are_picked_up(self):
        """Test JVMs appearing later are added on the next scan."""
        monitor, discovery = overview_monitor()
        monitor.poll_once()
        discovery.visible[4] = descriptor(4, attachable=False)

        cycle = monitor.poll_once()

        assert sorted(row.identity for row in cycle.rows) == [1, 2, 3, 4]

    def test_run_iterations(self):
        """Test run() stops after the requested cycles and paces with the clock."""
        clock = FakeClock()
        monitor = JvmMonitor(FakeDiscovery(), FakeProvider(), poll_rate=0.5, clock=clock)
        cycles = []

        monitor.run(iterations=3, on_cycle=cycles.append)

        assert len(cycles) == 3
        assert clock.sleeps == [0.5, 0.5]

    def test_run_stops_when_asked(self):
        """Test a callback may end the run."""
        monitor = JvmMonitor(FakeDiscovery(), FakeProvider(), clock=FakeClock())
        cycles = []

        def on_cycle(cycle):
            cycles.append(cycle)
            monitor.stop()

        monitor.run(on_cycle=on_cycle)
        assert len(cycles) == 1


class TestDetail:
    """Tests for single-JVM cycles."""

    @staticmethod
    def detail_monitor(connection: FakeConnection, **kwargs) -> JvmMonitor:
        return JvmMonitor(
            FakeDiscovery([descriptor(42)]), FakeProvider({42: connection}), pid=42, clock=FakeClock(), **kwargs
        )

    def test_detail_cycle(self):
        """Test the selected JVM is updated and its threads ranked."""
        connection = FakeConnection(
            operations={
                (THREADING, "getThreadCpuTime"): lambda tid: tid * 1000,
                (THREADING, "getThreadInfo"): lambda tid: {"threadId": tid, "threadName": f"t{tid}"},
            }
        )
        monitor = self.detail_monitor(connection, thread_limit=2)

        monitor.poll_once()
        cycle = monitor.poll_once()

        assert isinstance(cycle, DetailCycle)
        assert cycle.row.identity == 42
        assert cycle.row.state is ConnectionState.ATTACHED
        assert [thread.tid for thread in cycle.threads] == [1, 2]
        assert cycle.truncated

    def test_unknown_pid(self):
        """Test a PID that is not visible is reported as not attachable."""
        monitor = JvmMonitor(FakeDiscovery(), FakeProvider(), pid=99, clock=FakeClock())

        cycle = monitor.poll_once()

        assert cycle.row.state is ConnectionState.ERROR_DURING_ATTACH
        assert cycle.threads is None

    def test_ranking_failure_counts_as_update_error(self):
        """Test a failed thread ranking degrades the state."""
        connection = FakeConnection()
        del connection.objects[THREADING]["AllThreadIds"]
        monitor = self.detail_monitor(connection)

        cycle = monitor.poll_once()

        assert cycle.threads is None
        assert cycle.row.state is ConnectionState.ATTACHED_UPDATE_ERROR

    def test_no_discovery_after_attach(self):
        """Test the selected JVM is looked up only once."""
        connection = FakeConnection()
        discovery = FakeDiscovery([descriptor(42)])
        monitor = JvmMonitor(discovery, FakeProvider({42: connection}), pid=42, clock=FakeClock())

        monitor.poll_once()
        monitor.poll_once()

        assert discovery.calls == 1


class TestFinalize:
    """Tests for JvmMonitor.finalize()."""

    def test_finalize_once(self):
        """Test finalize returns the last cycle once and closes the connections."""
        connection = FakeConnection()
        monitor = JvmMonitor(FakeDiscovery([descriptor(1)]), FakeProvider({1: connection}), clock=FakeClock())
        cycle = monitor.poll_once()

        assert monitor.finalize() is cycle
        assert monitor.finalize() is None
        assert connection.closed

    def test_finalize_without_cycles(self):
        """Test finalize before any cycle returns None."""
        monitor = JvmMonitor(FakeDiscovery(), FakeProvider())
        assert monitor.finalize() is None
