"""Shared fakes for jvmtop tests."""

from collections.abc import Iterable, Sequence
from typing import Any

import pytest

from jvmtop.connection import CLASS_LOADING, MEMORY, OPERATING_SYSTEM, RUNTIME, THREADING
from jvmtop.errors import AttachFailure, ConnectionRefused, DiscoveryError, PartialAttributeFailure
from jvmtop.models import InstanceDescriptor

GC_YOUNG = "java.lang:type=GarbageCollector,name=G1 Young Generation"
GC_OLD = "java.lang:type=GarbageCollector,name=G1 Old Generation"


def jvm_objects(
    uptime: int = 10_000,
    cpu_time: int = 2_000_000_000,
    gc_time: int = 100,
    processors: int = 2,
    heap_used: int = 64 * 1024 * 1024,
    threads: int = 12,
) -> dict[str, dict[str, Any]]:
    """Attribute values of a healthy JVM."""
    return {
        RUNTIME: {
            "Uptime": uptime,
            "SystemProperties": {
                "java.runtime.version": "1.8.0_292-b10",
                "java.vendor": "Oracle Corporation",
                "java.vm.name": "OpenJDK 64-Bit Server VM",
                "java.version": "1.8.0_292",
                "user.name": "duke",
                "sun.java.command": "com.example.Main --port 8080",
            },
            "InputArguments": ["-Xmx1g"],
        },
        OPERATING_SYSTEM: {"ProcessCpuTime": cpu_time, "AvailableProcessors": processors},
        MEMORY: {
            "HeapMemoryUsage": {"init": 0, "used": heap_used, "committed": 2 * heap_used, "max": 1024 * 1024 * 1024},
            "NonHeapMemoryUsage": {"init": 0, "used": 32 * 1024 * 1024, "committed": 0, "max": -1},
        },
        CLASS_LOADING: {"TotalLoadedClassCount": 4200},
        THREADING: {
            "ThreadCount": threads,
            "PeakThreadCount": threads + 2,
            "TotalStartedThreadCount": threads + 5,
            "AllThreadIds": [1, 2, 3],
            "ThreadCpuTimeSupported": True,
        },
        GC_YOUNG: {"CollectionTime": gc_time, "CollectionCount": 7},
        GC_OLD: {"CollectionTime": 0, "CollectionCount": 0},
    }


class FakeConnection:
    """In-memory management connection recording every call."""

    def __init__(
        self,
        objects: dict[str, dict[str, Any]] | None = None,
        operations: dict[tuple[str, str], Any] | None = None,
        alive: bool = True,
    ) -> None:
        self.objects = objects if objects is not None else jvm_objects()
        self.operations = operations if operations is not None else {}
        self.alive = alive
        self.closed = False
        self.get_attribute_calls: list[tuple[str, str]] = []
        self.get_attributes_calls: list[tuple[str, list[str]]] = []
        self.invoke_calls: list[tuple[str, str, list[Any]]] = []

    @property
    def call_count(self) -> int:
        return len(self.get_attribute_calls) + len(self.get_attributes_calls) + len(self.invoke_calls)

    def get_attribute(self, object_name: str, attribute: str) -> Any:
        self.get_attribute_calls.append((object_name, attribute))
        values = self.objects.get(object_name, {})
        if attribute not in values:
            raise PartialAttributeFailure(object_name, attribute, "no such attribute")
        return values[attribute]

    def get_attributes(self, object_name: str, attributes: Iterable[str]) -> dict[str, Any]:
        names = list(attributes)
        self.get_attributes_calls.append((object_name, names))
        values = self.objects.get(object_name, {})
        return {name: values[name] for name in names if name in values}

    def query_names(self, pattern: str) -> list[str]:
        prefix = pattern.rstrip("*")
        return [name for name in self.objects if name.startswith(prefix)]

    def invoke(
        self,
        object_name: str,
        operation: str,
        params: Sequence[Any] = (),
        signature: Sequence[str] = (),
    ) -> Any:
        self.invoke_calls.append((object_name, operation, list(params)))
        result = self.operations.get((object_name, operation))
        if callable(result):
            return result(*params)
        return result

    def is_alive(self) -> bool:
        return self.alive

    def close(self) -> None:
        self.closed = True
        self.alive = False


class FakeProvider:
    """Connection provider serving FakeConnections by pid."""

    def __init__(
        self,
        connections: dict[int, FakeConnection] | None = None,
        refused: Iterable[int] = (),
        failing: Iterable[int] = (),
    ) -> None:
        self.connections = connections if connections is not None else {}
        self.refused = set(refused)
        self.failing = set(failing)
        self.opened: list[int] = []

    def open(self, descriptor: InstanceDescriptor) -> FakeConnection:
        self.opened.append(descriptor.pid)
        if descriptor.pid in self.refused:
            raise ConnectionRefused(f"PID={descriptor.pid} refused")
        if descriptor.pid in self.failing or descriptor.pid not in self.connections:
            raise AttachFailure(f"PID={descriptor.pid} failed")
        return self.connections[descriptor.pid]


class FakeDiscovery:
    """Discovery provider returning a configurable set of JVMs."""

    def __init__(self, descriptors: Iterable[InstanceDescriptor] = (), error: Exception | None = None) -> None:
        self.visible = {descriptor.pid: descriptor for descriptor in descriptors}
        self.error = error
        self.calls = 0

    def list_visible_instances(self) -> dict[int, InstanceDescriptor]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return dict(self.visible)


class FakeClock:
    """Clock that advances only when slept on."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def descriptor(pid: int, name: str = "com.example.Main", attachable: bool = True) -> InstanceDescriptor:
    return InstanceDescriptor(
        pid=pid,
        display_name=name,
        attachable=attachable,
        endpoint=f"http://localhost:{8000 + pid}/jolokia/" if attachable else None,
    )


@pytest.fixture
def connection() -> FakeConnection:
    """A healthy fake JVM connection."""
    return FakeConnection()


@pytest.fixture
def provider(connection: FakeConnection) -> FakeProvider:
    """Provider serving ``connection`` as PID 42."""
    return FakeProvider({42: connection})


@pytest.fixture
def broken_discovery() -> FakeDiscovery:
    return FakeDiscovery(error=DiscoveryError("no process table"))
