"""Connection state machine.

The connection state of a monitored JVM only changes through
:func:`transition`, a pure function over a closed transition table, so the
lifecycle can be tested without any I/O.
"""

from enum import Enum

from jvmtop.errors import InvalidTransition


class ConnectionState(Enum):
    """Health of the management connection to one JVM."""

    INIT = "init"
    CONNECTING = "connecting"
    ATTACHED = "attached"
    ATTACHED_UPDATE_ERROR = "attached_update_error"
    CONNECTION_REFUSED = "connection_refused"
    ERROR_DURING_ATTACH = "error_during_attach"
    DETACHED = "detached"

    @property
    def is_terminal(self) -> bool:
        """True if the state is never left again during this run."""
        return self in TERMINAL_STATES


class Event(Enum):
    """Inputs driving the connection state machine."""

    CONNECT = "connect"
    CONNECTED = "connected"
    PROBE_DEAD = "probe_dead"
    REFUSED = "refused"
    ATTACH_FAILED = "attach_failed"
    UPDATE_OK = "update_ok"
    UPDATE_FAILED = "update_failed"
    RETRIES_EXHAUSTED = "retries_exhausted"
    LIVENESS_LOST = "liveness_lost"


TERMINAL_STATES = frozenset(
    {
        ConnectionState.CONNECTION_REFUSED,
        ConnectionState.ERROR_DURING_ATTACH,
        ConnectionState.DETACHED,
    }
)

_LIVE_EVENTS = {
    Event.UPDATE_OK: ConnectionState.ATTACHED,
    Event.UPDATE_FAILED: ConnectionState.ATTACHED_UPDATE_ERROR,
    Event.RETRIES_EXHAUSTED: ConnectionState.DETACHED,
    Event.LIVENESS_LOST: ConnectionState.DETACHED,
}

_TRANSITIONS: dict[ConnectionState, dict[Event, ConnectionState]] = {
    ConnectionState.INIT: {
        Event.CONNECT: ConnectionState.CONNECTING,
        # Instances that are not attachable at all never start connecting
        Event.ATTACH_FAILED: ConnectionState.ERROR_DURING_ATTACH,
        Event.REFUSED: ConnectionState.CONNECTION_REFUSED,
    },
    ConnectionState.CONNECTING: {
        Event.CONNECTED: ConnectionState.ATTACHED,
        Event.PROBE_DEAD: ConnectionState.DETACHED,
        Event.REFUSED: ConnectionState.CONNECTION_REFUSED,
        Event.ATTACH_FAILED: ConnectionState.ERROR_DURING_ATTACH,
    },
    ConnectionState.ATTACHED: dict(_LIVE_EVENTS),
    ConnectionState.ATTACHED_UPDATE_ERROR: dict(_LIVE_EVENTS),
}


def transition(state: ConnectionState, event: Event) -> ConnectionState:
    """
    Compute the state following ``state`` when ``event`` occurs.

    Terminal states absorb every event.

    Raises:
        InvalidTransition: if ``event`` is not defined for a non-terminal state.
    """
    if state.is_terminal:
        return state
    try:
        return _TRANSITIONS[state][event]
    except KeyError:
        raise InvalidTransition(f"{event.value} is not valid in state {state.value}") from None
