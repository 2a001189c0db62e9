"""Attribute snapshot cache.

:class:`SnapshotConnection` decorates a :class:`ManagementConnection` so that
all attribute reads of one poll cycle are batched and memoized:

- The first time an attribute of an object is requested, it is fetched and
  cached. Later requests within the same cycle are served from the cache.
- :meth:`SnapshotConnection.flush` is called once before every cycle. It
  drops the cached values but keeps the names of every attribute ever
  requested per object.
- A cache miss re-fetches the union of the requested names and all names
  learned so far in a single call, so that after the first cycle each object
  costs exactly one round-trip per cycle.
"""

import logging
import threading
from collections.abc import Iterable, Sequence
from typing import Any

from jvmtop.connection import ManagementConnection

logger = logging.getLogger(__name__)


class SnapshotConnection:
    """Caching decorator over a management connection."""

    def __init__(self, connection: ManagementConnection) -> None:
        self._connection = connection
        self._lock = threading.Lock()
        self._cached_values: dict[str, dict[str, Any]] = {}
        self._cached_names: dict[str, set[str]] = {}

    @property
    def wrapped(self) -> ManagementConnection:
        """The undecorated connection."""
        return self._connection

    def flush(self) -> None:
        """Drop all cached values, keeping the learned attribute names."""
        with self._lock:
            self._cached_values = {}

    def get_attribute(self, object_name: str, attribute: str) -> Any:
        values = self._get_cached_attributes(object_name, {attribute})
        if attribute in values:
            return values[attribute]
        # Omitted from the batch, presumably because reading it raised.
        # The direct read will most likely raise the same error.
        logger.debug("%s#%s missing from batched read, reading directly", object_name, attribute)
        return self._connection.get_attribute(object_name, attribute)

    def get_attributes(self, object_name: str, attributes: Iterable[str]) -> dict[str, Any]:
        names = list(attributes)
        values = self._get_cached_attributes(object_name, set(names))
        return {name: values[name] for name in names if name in values}

    def query_names(self, pattern: str) -> list[str]:
        return self._connection.query_names(pattern)

    def invoke(
        self,
        object_name: str,
        operation: str,
        params: Sequence[Any] = (),
        signature: Sequence[str] = (),
    ) -> Any:
        return self._connection.invoke(object_name, operation, params, signature)

    def is_alive(self) -> bool:
        return self._connection.is_alive()

    def close(self) -> None:
        self._connection.close()

    def _get_cached_attributes(self, object_name: str, names: set[str]) -> dict[str, Any]:
        with self._lock:
            values = self._cached_values.get(object_name)
            if values is not None and names <= values.keys():
                return values
            names = names | self._cached_names.get(object_name, set())
            values = dict(self._connection.get_attributes(object_name, sorted(names)))
            self._cached_values[object_name] = values
            self._cached_names[object_name] = names
            return values
