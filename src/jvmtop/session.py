"""Connection sessions and the per-identity session registry."""

import logging
import threading
from collections.abc import Callable, Iterator

from jvmtop.connection import ConnectionProvider
from jvmtop.errors import ConnectionRefused
from jvmtop.models import InstanceDescriptor, InstanceIdentity
from jvmtop.snapshot import SnapshotConnection
from jvmtop.state import ConnectionState, Event, transition

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState, ConnectionState], None]

_LIVE_STATES = (ConnectionState.ATTACHED, ConnectionState.ATTACHED_UPDATE_ERROR)


class ConnectionSession:
    """
    Lifecycle of the management connection to one JVM.

    The session owns the connection handle (wrapped in a
    :class:`SnapshotConnection`) and the :class:`ConnectionState`. Every state
    change goes through :func:`jvmtop.state.transition` and is reported to the
    subscribed listeners as ``(old_state, new_state)``.
    """

    def __init__(self, descriptor: InstanceDescriptor, provider: ConnectionProvider) -> None:
        self.descriptor = descriptor
        self._provider = provider
        self._state = ConnectionState.INIT
        self._connection: SnapshotConnection | None = None
        self._listeners: list[StateListener] = []

    @property
    def identity(self) -> InstanceIdentity:
        return self.descriptor.pid

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection(self) -> SnapshotConnection | None:
        """The cached connection, or None if never connected."""
        return self._connection

    def subscribe(self, listener: StateListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def apply(self, event: Event) -> ConnectionState:
        """Feed ``event`` to the state machine and notify listeners on change."""
        old = self._state
        new = transition(old, event)
        if new is not old:
            self._state = new
            logger.debug("PID=%d %s -> %s (%s)", self.identity, old.value, new.value, event.value)
            for listener in list(self._listeners):
                listener(old, new)
        return new

    def connect(self) -> ConnectionState:
        """
        Establish the connection.

        Only acts in ``INIT``; otherwise returns the current state untouched.
        Failures are classified into a state rather than raised.
        """
        if self._state is not ConnectionState.INIT:
            return self._state

        if not self.descriptor.attachable:
            logger.debug("jvm is not attachable (PID=%d)", self.identity)
            return self.apply(Event.ATTACH_FAILED)

        self.apply(Event.CONNECT)
        try:
            connection = self._provider.open(self.descriptor)
        except ConnectionRefused:
            logger.debug("connection refused (PID=%d)", self.identity, exc_info=True)
            return self.apply(Event.REFUSED)
        except Exception:
            logger.warning("could not attach (PID=%d)", self.identity, exc_info=True)
            return self.apply(Event.ATTACH_FAILED)

        self._connection = SnapshotConnection(connection)
        if not connection.is_alive():
            logger.debug("connection dead right after attach (PID=%d)", self.identity)
            self.close()
            return self.apply(Event.PROBE_DEAD)
        return self.apply(Event.CONNECTED)

    def is_live(self) -> bool:
        """Whether the transport is usable. Losing it detaches the session."""
        live = self._connection is not None and self._connection.is_alive()
        if not live and self._state in _LIVE_STATES:
            self.apply(Event.LIVENESS_LOST)
        return live

    def close(self) -> None:
        """Close the underlying connection. Safe to call repeatedly."""
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            connection.close()
        except Exception:
            logger.debug("error closing connection (PID=%d)", self.identity, exc_info=True)


class SessionRegistry:
    """
    Maps instance identities to their single :class:`ConnectionSession`.

    Owned by the polling loop. Guarded by a lock so that a shutdown hook may
    read it while the loop is idle between cycles.
    """

    def __init__(self, provider: ConnectionProvider) -> None:
        self._provider = provider
        self._sessions: dict[InstanceIdentity, ConnectionSession] = {}
        self._lock = threading.Lock()

    def attach(self, descriptor: InstanceDescriptor) -> ConnectionSession:
        """Return the session for ``descriptor.pid``, creating it if needed."""
        with self._lock:
            session = self._sessions.get(descriptor.pid)
            if session is None:
                session = ConnectionSession(descriptor, self._provider)
                self._sessions[descriptor.pid] = session
            return session

    def get(self, identity: InstanceIdentity) -> ConnectionSession | None:
        with self._lock:
            return self._sessions.get(identity)

    def teardown(self, identity: InstanceIdentity) -> None:
        """Close and forget the session of ``identity``."""
        with self._lock:
            session = self._sessions.pop(identity, None)
        if session is not None:
            session.close()

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __iter__(self) -> Iterator[ConnectionSession]:
        with self._lock:
            return iter(list(self._sessions.values()))
