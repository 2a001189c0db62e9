"""Management connection capability and typed views of the platform MXBeans.

A :class:`ManagementConnection` reads attributes of, and invokes operations on,
named management objects of one JVM. The views below give each metrics
category (memory, threading, runtime, class loading, garbage collection,
operating system) an explicit typed interface on top of such a connection.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from jvmtop.models import InstanceDescriptor, MemoryUsage

MEMORY = "java.lang:type=Memory"
RUNTIME = "java.lang:type=Runtime"
THREADING = "java.lang:type=Threading"
CLASS_LOADING = "java.lang:type=ClassLoading"
OPERATING_SYSTEM = "java.lang:type=OperatingSystem"
GARBAGE_COLLECTORS = "java.lang:type=GarbageCollector,*"


class ManagementConnection(Protocol):
    """Connection to the management server of one JVM."""

    def get_attribute(self, object_name: str, attribute: str) -> Any:
        """Read a single attribute, raising if it cannot be read."""
        ...

    def get_attributes(self, object_name: str, attributes: Iterable[str]) -> dict[str, Any]:
        """Read several attributes in one round-trip; failed attributes are omitted."""
        ...

    def query_names(self, pattern: str) -> list[str]:
        """List the registered object names matching ``pattern``."""
        ...

    def invoke(
        self,
        object_name: str,
        operation: str,
        params: Sequence[Any] = (),
        signature: Sequence[str] = (),
    ) -> Any:
        """Invoke an operation of a management object."""
        ...

    def is_alive(self) -> bool:
        """Whether the transport is still usable."""
        ...

    def close(self) -> None:
        """Release the transport."""
        ...


class ConnectionProvider(Protocol):
    """Opens management connections to discovered JVMs."""

    def open(self, descriptor: InstanceDescriptor) -> ManagementConnection:
        """
        Connect to the JVM described by ``descriptor``.

        Raises:
            ConnectionRefused: if the peer rejects the connection.
            AttachFailure: for any other failure.
        """
        ...


@dataclass(slots=True, frozen=True)
class ThreadInfo:
    """Name, state and lock owner of one thread."""

    tid: int
    name: str
    state: str
    lock_owner_id: int = -1

    @classmethod
    def from_composite(cls, data: dict[str, Any]) -> "ThreadInfo":
        return cls(
            tid=int(data.get("threadId", -1)),
            name=str(data.get("threadName", "")),
            state=str(data.get("threadState", "")),
            lock_owner_id=int(data.get("lockOwnerId", -1)),
        )


def _tabular_to_dict(value: Any) -> dict[str, str]:
    """Flatten a key/value tabular attribute into a plain dict."""
    if not value:
        return {}
    if isinstance(value, list):
        return {str(row["key"]): str(row["value"]) for row in value}
    result: dict[str, str] = {}
    for key, row in value.items():
        if isinstance(row, dict) and "value" in row:
            result[str(key)] = str(row["value"])
        else:
            result[str(key)] = str(row)
    return result


class MemoryView:
    """java.lang:type=Memory"""

    def __init__(self, connection: ManagementConnection) -> None:
        self._connection = connection

    def heap_usage(self) -> MemoryUsage:
        return MemoryUsage.from_composite(self._connection.get_attribute(MEMORY, "HeapMemoryUsage"))

    def non_heap_usage(self) -> MemoryUsage:
        return MemoryUsage.from_composite(
            self._connection.get_attribute(MEMORY, "NonHeapMemoryUsage")
        )


class RuntimeView:
    """java.lang:type=Runtime"""

    def __init__(self, connection: ManagementConnection) -> None:
        self._connection = connection

    def uptime(self) -> int:
        return int(self._connection.get_attribute(RUNTIME, "Uptime"))

    def system_properties(self) -> dict[str, str]:
        return _tabular_to_dict(self._connection.get_attribute(RUNTIME, "SystemProperties"))

    def input_arguments(self) -> list[str]:
        return [str(arg) for arg in self._connection.get_attribute(RUNTIME, "InputArguments") or []]


class ClassLoadingView:
    """java.lang:type=ClassLoading"""

    def __init__(self, connection: ManagementConnection) -> None:
        self._connection = connection

    def total_loaded_class_count(self) -> int:
        return int(self._connection.get_attribute(CLASS_LOADING, "TotalLoadedClassCount"))


class OperatingSystemView:
    """java.lang:type=OperatingSystem, including the process CPU time extension."""

    def __init__(self, connection: ManagementConnection) -> None:
        self._connection = connection

    def available_processors(self) -> int:
        return int(self._connection.get_attribute(OPERATING_SYSTEM, "AvailableProcessors"))

    def process_cpu_time(self) -> int:
        """Cumulative CPU time of the JVM process in nanoseconds."""
        return int(self._connection.get_attribute(OPERATING_SYSTEM, "ProcessCpuTime"))


class GarbageCollectorView:
    """One java.lang:type=GarbageCollector,name=... object."""

    def __init__(self, connection: ManagementConnection, object_name: str) -> None:
        self._connection = connection
        self.object_name = object_name

    def collection_time(self) -> int:
        return int(self._connection.get_attribute(self.object_name, "CollectionTime"))

    def collection_count(self) -> int:
        return int(self._connection.get_attribute(self.object_name, "CollectionCount"))


class ThreadingView:
    """java.lang:type=Threading"""

    def __init__(self, connection: ManagementConnection) -> None:
        self._connection = connection

    def thread_count(self) -> int:
        return int(self._connection.get_attribute(THREADING, "ThreadCount"))

    def peak_thread_count(self) -> int:
        return int(self._connection.get_attribute(THREADING, "PeakThreadCount"))

    def total_started_thread_count(self) -> int:
        return int(self._connection.get_attribute(THREADING, "TotalStartedThreadCount"))

    def all_thread_ids(self) -> list[int]:
        return [int(tid) for tid in self._connection.get_attribute(THREADING, "AllThreadIds") or []]

    def is_thread_cpu_time_supported(self) -> bool:
        return bool(self._connection.get_attribute(THREADING, "ThreadCpuTimeSupported"))

    def thread_cpu_time(self, tid: int) -> int:
        """CPU time of one thread in nanoseconds, -1 if the thread is gone."""
        return int(self._connection.invoke(THREADING, "getThreadCpuTime", [tid], ["long"]))

    def thread_info(self, tid: int) -> ThreadInfo | None:
        data = self._connection.invoke(THREADING, "getThreadInfo", [tid], ["long"])
        if not data:
            return None
        return ThreadInfo.from_composite(data)

    def find_deadlocked_threads(self) -> list[int] | None:
        """Threads deadlocked on monitors or ownable synchronizers."""
        return self._connection.invoke(THREADING, "findDeadlockedThreads") or None

    def find_monitor_deadlocked_threads(self) -> list[int] | None:
        return self._connection.invoke(THREADING, "findMonitorDeadlockedThreads") or None


class PlatformClient:
    """Typed access to the platform MXBeans of one JVM."""

    def __init__(self, connection: ManagementConnection) -> None:
        self.connection = connection
        self.memory = MemoryView(connection)
        self.runtime = RuntimeView(connection)
        self.class_loading = ClassLoadingView(connection)
        self.operating_system = OperatingSystemView(connection)
        self.threading = ThreadingView(connection)
        self._garbage_collectors: list[GarbageCollectorView] | None = None

    def garbage_collectors(self) -> list[GarbageCollectorView]:
        """The collectors of the JVM, looked up once per connection."""
        if self._garbage_collectors is None:
            names = self.connection.query_names(GARBAGE_COLLECTORS)
            self._garbage_collectors = [
                GarbageCollectorView(self.connection, name) for name in sorted(names)
            ]
        return self._garbage_collectors

    def sum_gc_times(self) -> int:
        return sum(gc.collection_time() for gc in self.garbage_collectors())

    def sum_gc_counts(self) -> int:
        return sum(gc.collection_count() for gc in self.garbage_collectors())
