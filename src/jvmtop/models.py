"""Data models for jvmtop."""

from dataclasses import dataclass, field
from typing import Any

from jvmtop.state import ConnectionState

# Process id of the monitored JVM
InstanceIdentity = int


@dataclass(slots=True, frozen=True)
class MemoryUsage:
    """Immutable memory usage of one memory area, in bytes (-1 if undefined)."""

    init: int = -1
    used: int = 0
    committed: int = 0
    max: int = -1

    @classmethod
    def from_composite(cls, data: dict[str, Any] | None) -> "MemoryUsage":
        """Build from the composite value of a MemoryUsage attribute."""
        if not data:
            return cls()
        return cls(
            init=int(data.get("init", -1)),
            used=int(data.get("used", 0)),
            committed=int(data.get("committed", 0)),
            max=int(data.get("max", -1)),
        )


@dataclass(slots=True, frozen=True)
class InstanceDescriptor:
    """Discovery metadata of a locally visible JVM."""

    pid: InstanceIdentity
    display_name: str
    attachable: bool
    endpoint: str | None = None  # management URL, e.g. http://localhost:8778/jolokia
    user: str | None = None
    password: str | None = None


@dataclass(slots=True)
class MetricsSnapshot:
    """Latest raw counters and derived loads of one JVM, updated every cycle."""

    uptime: int = 0  # ms
    process_cpu_time: int = 0  # ns
    gc_time: int = 0  # ms, summed over all collectors
    gc_count: int = 0
    heap: MemoryUsage = field(default_factory=MemoryUsage)
    non_heap: MemoryUsage = field(default_factory=MemoryUsage)
    loaded_class_count: int = 0
    thread_count: int = 0
    peak_thread_count: int = 0
    total_started_thread_count: int = 0
    deadlocks_detected: bool = False

    # Baselines of the previous cycle, -1 until the first sample
    last_uptime: int = -1
    last_cpu_time: int = -1
    last_gc_time: int = 0

    delta_uptime: int = 0  # ms
    delta_cpu_time: int = 0  # ms
    delta_gc_time: int = 0  # ms

    cpu_load: float = 0.0  # ratio, multiply by 100 for display
    gc_load: float = 0.0
    update_error_count: int = 0

    # Read once per session
    vm_version: str = ""
    os_user: str = ""
    system_properties: dict[str, str] = field(default_factory=dict)
    input_arguments: list[str] = field(default_factory=list)

    @property
    def heap_used(self) -> int:
        return self.heap.used

    @property
    def heap_size(self) -> int:
        return self.heap.committed

    @property
    def heap_max(self) -> int:
        return self.heap.max

    @property
    def non_heap_used(self) -> int:
        return self.non_heap.used

    @property
    def non_heap_max(self) -> int:
        return self.non_heap.max


@dataclass(slots=True, frozen=True)
class ThreadRow:
    """One ranked thread of the detail view."""

    tid: int
    name: str
    state: str  # RUNNABLE, BLOCKED, WAITING, ...
    cpu_percent: float  # share of the last cycle's wall time
    total_cpu_percent: float  # share of the process' lifetime CPU time
    blocked_by: int | None  # id of the thread owning the awaited lock


@dataclass(slots=True, frozen=True)
class InstanceRow:
    """One monitored JVM as published for rendering."""

    identity: InstanceIdentity
    display_name: str
    metrics: MetricsSnapshot
    state: ConnectionState


@dataclass(slots=True, frozen=True)
class OverviewCycle:
    """Result of one poll cycle over all tracked JVMs, already sorted."""

    rows: list[InstanceRow]
    timestamp: float


@dataclass(slots=True, frozen=True)
class DetailCycle:
    """Result of one poll cycle for a single JVM."""

    row: InstanceRow
    threads: list[ThreadRow] | None  # None if thread CPU time is unsupported
    truncated: bool
    timestamp: float
