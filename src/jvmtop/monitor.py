"""JVM monitoring engine for jvmtop."""

import logging
import threading
import time
from collections.abc import Callable
from queue import Queue
from typing import Protocol

from jvmtop.connection import ConnectionProvider
from jvmtop.discovery import DiscoveryProvider, InstanceRegistry
from jvmtop.errors import DiscoveryError
from jvmtop.instance import InstanceMonitor
from jvmtop.models import DetailCycle, InstanceDescriptor, InstanceIdentity, OverviewCycle
from jvmtop.ranking import SortKey, sort_instances
from jvmtop.session import SessionRegistry
from jvmtop.state import ConnectionState

logger = logging.getLogger(__name__)

Cycle = OverviewCycle | DetailCycle


class Clock(Protocol):
    """Time source and sleeper pacing the poll cycles."""

    def time(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class JvmMonitor:
    """
    Polls the tracked JVMs once per cycle.

    Each cycle merges newly discovered JVMs into the registry, updates every
    tracked JVM, sorts the results and publishes them. In overview mode all
    local JVMs are tracked; when ``pid`` is given only that JVM is, and its
    threads are ranked as well.

    Cycles run either on the caller's thread (:meth:`run`, :meth:`poll_once`)
    or on a daemon thread (:meth:`start`) that pushes every cycle to a
    thread-safe Queue.
    """

    def __init__(
        self,
        discovery: DiscoveryProvider,
        provider: ConnectionProvider,
        update_queue: Queue[Cycle] | None = None,
        poll_rate: float = 1.0,
        sort_key: SortKey = SortKey.CPU,
        pid: InstanceIdentity | None = None,
        thread_limit: int | None = 30,
        rescan_every: int = 1,
        clock: Clock | None = None,
    ) -> None:
        """
        Initialize the JvmMonitor.

        Args:
            discovery: Source of the visible JVMs.
            provider: Opens management connections to them.
            update_queue: Queue every published cycle is pushed to, if any.
            poll_rate: Delay between cycles (in seconds). Default 1.0s.
            sort_key: Order of the overview rows.
            pid: Restrict monitoring to this JVM (detail view).
            thread_limit: Maximum number of ranked threads, None for all.
            rescan_every: Run discovery only every n-th overview cycle.
            clock: Time source and sleeper, defaults to wall time and the stop event.
        """
        self._discovery = discovery
        self._queue = update_queue
        self._poll_rate = poll_rate
        self.sort_key = sort_key
        self._pid = pid
        self._thread_limit = thread_limit
        self._rescan_every = max(1, rescan_every)
        self._clock = clock
        self._registry = InstanceRegistry(SessionRegistry(provider))
        self._iteration = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._latest: Cycle | None = None
        self._finalized = False
        self.fatal_error: DiscoveryError | None = None

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def registry(self) -> InstanceRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def latest(self) -> Cycle | None:
        """The most recently published cycle."""
        with self._lock:
            return self._latest

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="JvmMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            self._thread = None

    def run(self, iterations: int | None = None, on_cycle: Callable[[Cycle], None] | None = None) -> None:
        """
        Poll on the calling thread until stopped or ``iterations`` cycles ran.

        Raises:
            DiscoveryError: if the JVMs cannot be discovered.
        """
        self._stop_event.clear()
        count = 0
        while not self._stop_event.is_set():
            cycle = self.poll_once()
            if on_cycle is not None:
                on_cycle(cycle)
            count += 1
            if iterations is not None and count >= iterations:
                break
            self._sleep(self._poll_rate)

    def finalize(self) -> Cycle | None:
        """
        Shut the monitor down and return the last published cycle.

        Only the first call does anything; later calls return None.
        """
        with self._lock:
            if self._finalized:
                return None
            self._finalized = True
        self.stop()
        with self._lock:
            cycle = self._latest
        self._registry.close()
        return cycle

    def poll_once(self) -> Cycle:
        """
        Run one cycle and publish its result.

        Raises:
            DiscoveryError: if the JVMs cannot be discovered.
        """
        if self._pid is None:
            cycle: Cycle = self._poll_overview()
        else:
            cycle = self._poll_detail(self._pid)
        self._publish(cycle)
        return cycle

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except DiscoveryError as exc:
                logger.critical("discovery failed, monitoring stopped: %s", exc)
                self.fatal_error = exc
                self._stop_event.set()
                break
            except Exception:
                # Keep polling, one bad cycle must not end the monitor
                logger.exception("unexpected error during poll cycle")

            self._sleep(self._poll_rate)

    def _poll_overview(self) -> OverviewCycle:
        if self._iteration % self._rescan_every == 0:
            self._scan()
        self._iteration += 1

        for instance in self._registry.instances:
            instance.update()

        ordered = sort_instances(self._registry.instances, self.sort_key)
        return OverviewCycle(rows=[instance.to_row() for instance in ordered], timestamp=self._time())

    def _poll_detail(self, pid: InstanceIdentity) -> DetailCycle:
        instance = self._registry.get(pid)
        if instance is None:
            descriptor = self._list_visible().get(pid) or InstanceDescriptor(
                pid=pid, display_name="", attachable=False
            )
            self._registry.merge_discovered({pid: descriptor})
            instance = self._registry.get(pid)

        instance.update()
        threads, truncated = None, False
        if instance.state is ConnectionState.ATTACHED:
            threads, truncated = self._rank_threads(instance)
        return DetailCycle(
            row=instance.to_row(), threads=threads, truncated=truncated, timestamp=self._time()
        )

    def _rank_threads(self, instance: InstanceMonitor):
        try:
            return instance.top_threads(self._thread_limit)
        except Exception:
            logger.debug("error ranking threads (PID=%d)", instance.identity, exc_info=True)
            instance.record_failure()
            return None, False

    def _scan(self) -> None:
        added = self._registry.merge_discovered(self._list_visible())
        if added:
            logger.info("discovered %d new JVM(s): %s", len(added), added)

    def _list_visible(self) -> dict[InstanceIdentity, InstanceDescriptor]:
        try:
            return self._discovery.list_visible_instances()
        except DiscoveryError:
            raise
        except Exception as exc:
            raise DiscoveryError(str(exc)) from exc

    def _publish(self, cycle: Cycle) -> None:
        with self._lock:
            self._latest = cycle
        if self._queue is not None:
            self._queue.put(cycle)

    def _time(self) -> float:
        return self._clock.time() if self._clock is not None else time.time()

    def _sleep(self, seconds: float) -> None:
        if self._clock is not None:
            self._clock.sleep(seconds)
        else:
            # Wait for poll_rate seconds or until stop is requested
            self._stop_event.wait(timeout=seconds)
