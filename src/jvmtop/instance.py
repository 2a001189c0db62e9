"""Metrics engine: one monitored JVM and its update cycle."""

import dataclasses
import logging
import re

from jvmtop.connection import PlatformClient
from jvmtop.errors import PermanentDetach
from jvmtop.models import (
    InstanceDescriptor,
    InstanceIdentity,
    InstanceRow,
    MetricsSnapshot,
    ThreadRow,
)
from jvmtop.ranking import ThreadRanker
from jvmtop.session import ConnectionSession, SessionRegistry
from jvmtop.state import ConnectionState, Event

logger = logging.getLogger(__name__)

# Failed cycles tolerated before the instance is detached for good
MAX_UPDATE_ERRORS = 10

LOAD_CLIP = 99.0

_OLD_VERSION_RE = re.compile(r"[0-9]\.([0-9])\.0_([0-9]+)-.*")
_BUILD_VERSION_RE = re.compile(r".*-(.*)_.*")


def calc_load(elapsed: float, busy: float, processors: int) -> float:
    """
    Share of ``elapsed`` spent ``busy`` per processor, as a ratio.

    Returns 0.0 when nothing was busy or no time elapsed. The ratio is clipped
    to 99.0 before any percentage scaling.
    """
    if busy <= 0 or elapsed == 0:
        return 0.0
    return min(LOAD_CLIP, busy / (elapsed * processors))


def thread_cpu_utilization(cpu_time: int, total_time: int, factor: float = 1_000_000) -> float:
    """Percentage of ``total_time`` consumed by ``cpu_time`` scaled down by ``factor``."""
    if total_time == 0:
        return 0.0
    return cpu_time / factor / total_time * 100.0


def short_version(properties: dict[str, str]) -> str:
    """Compact vendor/version tag such as ``O8U292`` from the system properties."""
    version = properties.get("java.runtime.version", "")
    vendor = properties.get("java.vendor", "") or "?"
    match = _OLD_VERSION_RE.fullmatch(version)
    if match:
        return f"{vendor[0]}{match.group(1)}U{match.group(2)}"
    match = _BUILD_VERSION_RE.fullmatch(version)
    if match:
        return f"{vendor[0]}{match.group(1)[2:6]}"
    return version


class InstanceMonitor:
    """
    Latest metrics of one JVM.

    Each call to :meth:`update` runs one poll cycle against the session's
    cached connection and drives the session's state on failure.
    """

    def __init__(self, session: ConnectionSession) -> None:
        self.session = session
        self.metrics = MetricsSnapshot()
        self._platform: PlatformClient | None = None
        self._thread_ranker = ThreadRanker()
        self._constants_loaded = False

    @classmethod
    def attach(cls, sessions: SessionRegistry, descriptor: InstanceDescriptor) -> "InstanceMonitor":
        """Look up or create the session for ``descriptor`` and connect it."""
        session = sessions.attach(descriptor)
        session.connect()
        return cls(session)

    @property
    def identity(self) -> InstanceIdentity:
        return self.session.identity

    @property
    def display_name(self) -> str:
        return self.session.descriptor.display_name

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    def update(self) -> None:
        """Refresh all metrics from the JVM."""
        if self.state is ConnectionState.INIT:
            self.session.connect()
        if self.state.is_terminal:
            return
        if not self.session.is_live():
            return

        try:
            self._update_metrics()
        except Exception:
            logger.debug("error during update (PID=%d)", self.identity, exc_info=True)
            self.record_failure()
            return
        self.session.apply(Event.UPDATE_OK)

    def record_failure(self) -> None:
        """Count a failed cycle and degrade the session state accordingly."""
        self.metrics.update_error_count += 1
        if self.metrics.update_error_count > MAX_UPDATE_ERRORS:
            logger.info("giving up on PID=%d after %d errors", self.identity, self.metrics.update_error_count)
            self.session.apply(Event.RETRIES_EXHAUSTED)
        else:
            self.session.apply(Event.UPDATE_FAILED)

    def top_threads(self, limit: int | None = None) -> tuple[list[ThreadRow] | None, bool]:
        """
        Rank this JVM's threads by CPU consumed since the previous call.

        Returns the ranked rows (None if the JVM does not measure thread CPU
        time) and whether the list was truncated to ``limit``.

        Raises:
            PermanentDetach: if the instance is no longer monitored.
        """
        if self.state.is_terminal or self.session.connection is None:
            raise PermanentDetach(f"PID={self.identity} is {self.state.value}")
        threading = self._platform_client().threading
        if not threading.is_thread_cpu_time_supported():
            return None, False

        current = {tid: threading.thread_cpu_time(tid) for tid in threading.all_thread_ids()}
        ranked = self._thread_ranker.rank(current, limit)

        rows: list[ThreadRow] = []
        for tid, delta in ranked.deltas:
            info = threading.thread_info(tid)
            if info is None:
                continue  # thread ended meanwhile
            rows.append(
                ThreadRow(
                    tid=tid,
                    name=info.name,
                    state=info.state,
                    cpu_percent=thread_cpu_utilization(delta, self.metrics.delta_uptime),
                    total_cpu_percent=thread_cpu_utilization(
                        current[tid], self.metrics.process_cpu_time, 1
                    ),
                    blocked_by=info.lock_owner_id if info.lock_owner_id >= 0 else None,
                )
            )
        return rows, ranked.truncated

    def to_row(self) -> InstanceRow:
        """Copy of the current state, safe to hand to another thread."""
        return InstanceRow(
            identity=self.identity,
            display_name=self.display_name,
            metrics=dataclasses.replace(self.metrics),
            state=self.state,
        )

    def _platform_client(self) -> PlatformClient:
        if self._platform is None:
            self._platform = PlatformClient(self.session.connection)
        return self._platform

    def _update_metrics(self) -> None:
        self.session.connection.flush()
        platform = self._platform_client()
        metrics = self.metrics

        if not self._constants_loaded:
            properties = platform.runtime.system_properties()
            metrics.system_properties = properties
            metrics.vm_version = short_version(properties)
            metrics.os_user = properties.get("user.name", "")
            metrics.input_arguments = platform.runtime.input_arguments()
            self._constants_loaded = True

        uptime = platform.runtime.uptime()
        cpu_time = platform.operating_system.process_cpu_time()
        gc_time = platform.sum_gc_times()
        gc_count = platform.sum_gc_counts()
        processors = platform.operating_system.available_processors()
        heap = platform.memory.heap_usage()
        non_heap = platform.memory.non_heap_usage()
        loaded_classes = platform.class_loading.total_loaded_class_count()
        thread_count = platform.threading.thread_count()
        peak_thread_count = platform.threading.peak_thread_count()
        started_thread_count = platform.threading.total_started_thread_count()
        deadlocks = (
            platform.threading.find_deadlocked_threads() is not None
            or platform.threading.find_monitor_deadlocked_threads() is not None
        )

        if metrics.last_uptime > 0 and metrics.last_cpu_time > 0 and gc_time > 0:
            metrics.delta_uptime = uptime - metrics.last_uptime
            metrics.delta_cpu_time = (cpu_time - metrics.last_cpu_time) // 1_000_000
            metrics.delta_gc_time = gc_time - metrics.last_gc_time
            metrics.gc_load = calc_load(metrics.delta_cpu_time, metrics.delta_gc_time, processors)
            metrics.cpu_load = calc_load(metrics.delta_uptime, metrics.delta_cpu_time, processors)

        metrics.last_uptime = uptime
        metrics.last_cpu_time = cpu_time
        metrics.last_gc_time = gc_time

        metrics.uptime = uptime
        metrics.process_cpu_time = cpu_time
        metrics.gc_time = gc_time
        metrics.gc_count = gc_count
        metrics.heap = heap
        metrics.non_heap = non_heap
        metrics.loaded_class_count = loaded_classes
        metrics.thread_count = thread_count
        metrics.peak_thread_count = peak_thread_count
        metrics.total_started_thread_count = started_thread_count
        metrics.deadlocks_detected = deadlocks
