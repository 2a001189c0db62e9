"""Management connection over a Jolokia agent (JMX over HTTP/JSON)."""

import logging
from collections.abc import Iterable, Sequence
from typing import Any

import requests

from jvmtop.errors import (
    AttachFailure,
    ConnectionRefused,
    PartialAttributeFailure,
    TransientUpdateFailure,
)
from jvmtop.models import InstanceDescriptor

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

_DENIED = (401, 403)


class JolokiaConnection:
    """
    :class:`~jvmtop.connection.ManagementConnection` backed by a Jolokia agent.

    Batched reads are sent as one bulk request holding a read request per
    attribute, so a failing attribute does not fail its siblings.
    """

    def __init__(
        self,
        url: str,
        user: str | None = None,
        password: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._session = session or requests.Session()
        if user:
            self._session.auth = (user, password or "")
        self._alive = False

    def connect(self) -> None:
        """
        Handshake with the agent.

        Raises:
            ConnectionRefused: if the agent refuses the connection or the credentials.
            AttachFailure: for any other failure.
        """
        try:
            self._request({"type": "version"})
        except ConnectionRefused:
            raise
        except TransientUpdateFailure as exc:
            raise AttachFailure(f"cannot reach jolokia agent at {self.url}: {exc}") from exc
        self._alive = True

    def get_attribute(self, object_name: str, attribute: str) -> Any:
        response = self._post({"type": "read", "mbean": object_name, "attribute": attribute})
        status = response.get("status")
        if status in _DENIED:
            raise ConnectionRefused(response.get("error", "access denied"))
        if status != 200:
            raise PartialAttributeFailure(object_name, attribute, response.get("error", ""))
        return response.get("value")

    def get_attributes(self, object_name: str, attributes: Iterable[str]) -> dict[str, Any]:
        names = list(attributes)
        if not names:
            return {}
        responses = self._post(
            [{"type": "read", "mbean": object_name, "attribute": name} for name in names]
        )
        values: dict[str, Any] = {}
        for name, response in zip(names, responses):
            status = response.get("status")
            if status in _DENIED:
                raise ConnectionRefused(response.get("error", "access denied"))
            if status != 200:
                logger.debug("%s", PartialAttributeFailure(object_name, name, response.get("error", "")))
                continue
            values[name] = response.get("value")
        return values

    def query_names(self, pattern: str) -> list[str]:
        return list(self._request({"type": "search", "mbean": pattern}) or [])

    def invoke(
        self,
        object_name: str,
        operation: str,
        params: Sequence[Any] = (),
        signature: Sequence[str] = (),
    ) -> Any:
        if signature:
            operation = f"{operation}({','.join(signature)})"
        return self._request(
            {"type": "exec", "mbean": object_name, "operation": operation, "arguments": list(params)}
        )

    def is_alive(self) -> bool:
        return self._alive

    def close(self) -> None:
        self._alive = False
        self._session.close()

    def _request(self, payload: dict[str, Any]) -> Any:
        response = self._post(payload)
        status = response.get("status")
        if status in _DENIED:
            raise ConnectionRefused(response.get("error", "access denied"))
        if status != 200:
            raise TransientUpdateFailure(
                f"{payload['type']} failed with status {status}: {response.get('error', '')}"
            )
        return response.get("value")

    def _post(self, payload: Any) -> Any:
        try:
            response = self._session.post(self.url, json=payload, timeout=self._timeout)
        except requests.ConnectionError as exc:
            if "refused" in str(exc).lower():
                # Nothing listens on the agent port any more, the JVM is gone
                self._alive = False
                raise ConnectionRefused(f"connection refused by {self.url}") from exc
            raise TransientUpdateFailure(f"connection to {self.url} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise TransientUpdateFailure(f"request to {self.url} failed: {exc}") from exc

        if response.status_code in _DENIED:
            raise ConnectionRefused(f"{self.url} answered HTTP {response.status_code}")
        if response.status_code != 200:
            raise TransientUpdateFailure(f"{self.url} answered HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise TransientUpdateFailure(f"invalid response from {self.url}") from exc


class JolokiaProvider:
    """Opens :class:`JolokiaConnection` objects for discovered JVMs."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._timeout = timeout

    def open(self, descriptor: InstanceDescriptor) -> JolokiaConnection:
        if not descriptor.endpoint:
            raise AttachFailure(f"no management endpoint for PID={descriptor.pid}")
        connection = JolokiaConnection(
            descriptor.endpoint,
            user=descriptor.user,
            password=descriptor.password,
            timeout=self._timeout,
        )
        try:
            connection.connect()
        except Exception:
            connection.close()
            raise
        return connection
