"""Ordering of monitored JVMs and of the threads of one JVM."""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from jvmtop.models import MetricsSnapshot


class SortKey(Enum):
    """Sort keys for the overview."""

    CPU = "cpu"
    HEAP = "heap"


class HasMetrics(Protocol):
    metrics: MetricsSnapshot


def sort_instances(instances: Iterable[HasMetrics], key: SortKey = SortKey.CPU) -> list:
    """
    Order instances for display.

    ``SortKey.HEAP`` sorts ascending by used heap, ``SortKey.CPU`` descending
    by CPU load. Both are stable, so ties keep their input order.
    """
    if key is SortKey.HEAP:
        return sorted(instances, key=lambda i: i.metrics.heap_used)
    return sorted(instances, key=lambda i: i.metrics.cpu_load, reverse=True)


@dataclass(slots=True, frozen=True)
class RankedThreads:
    """Thread ids with their CPU time delta, busiest first."""

    deltas: list[tuple[int, int]]
    truncated: bool

    @property
    def tids(self) -> list[int]:
        return [tid for tid, _ in self.deltas]


class ThreadRanker:
    """Ranks threads by the CPU time they consumed since the previous cycle."""

    def __init__(self) -> None:
        self._previous: dict[int, int] = {}

    def rank(self, current: Mapping[int, int], limit: int | None = None) -> RankedThreads:
        """
        Rank threads by CPU time delta.

        Args:
            current: cumulative CPU time per thread id for this cycle.
            limit: maximum number of ranked threads, None for no limit.

        Threads first seen this cycle have no delta yet and are left out.
        ``truncated`` is set when a limit is enabled and the cycle saw at
        least ``limit`` threads.
        """
        deltas = [
            (tid, cpu_time - self._previous[tid])
            for tid, cpu_time in current.items()
            if tid in self._previous
        ]
        deltas.sort(key=lambda item: item[1], reverse=True)

        truncated = False
        if limit is not None:
            deltas = deltas[:limit]
            truncated = len(current) >= limit

        self._previous = dict(current)
        return RankedThreads(deltas=deltas, truncated=truncated)
