"""Tests for the connection state machine."""

import pytest

from jvmtop.errors import InvalidTransition
from jvmtop.state import TERMINAL_STATES, ConnectionState, Event, transition


class TestTransition:
    """Tests for transition()."""

    def test_connect_path(self):
        """Test the happy path from INIT to ATTACHED."""
        state = transition(ConnectionState.INIT, Event.CONNECT)
        assert state is ConnectionState.CONNECTING
        assert transition(state, Event.CONNECTED) is ConnectionState.ATTACHED

    def test_dead_probe_detaches(self):
        """Test a connection found dead right after attach ends DETACHED."""
        assert transition(ConnectionState.CONNECTING, Event.PROBE_DEAD) is ConnectionState.DETACHED

    def test_attach_failures(self):
        """Test refusal and attach errors from INIT and CONNECTING."""
        for state in (ConnectionState.INIT, ConnectionState.CONNECTING):
            assert transition(state, Event.REFUSED) is ConnectionState.CONNECTION_REFUSED
            assert transition(state, Event.ATTACH_FAILED) is ConnectionState.ERROR_DURING_ATTACH

    def test_update_error_recovers(self):
        """Test a successful update leaves ATTACHED_UPDATE_ERROR."""
        state = transition(ConnectionState.ATTACHED, Event.UPDATE_FAILED)
        assert state is ConnectionState.ATTACHED_UPDATE_ERROR
        assert transition(state, Event.UPDATE_FAILED) is ConnectionState.ATTACHED_UPDATE_ERROR
        assert transition(state, Event.UPDATE_OK) is ConnectionState.ATTACHED

    def test_live_states_detach(self):
        """Test exhausted retries and lost liveness both detach."""
        for state in (ConnectionState.ATTACHED, ConnectionState.ATTACHED_UPDATE_ERROR):
            assert transition(state, Event.RETRIES_EXHAUSTED) is ConnectionState.DETACHED
            assert transition(state, Event.LIVENESS_LOST) is ConnectionState.DETACHED

    @pytest.mark.parametrize("state", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_absorb_every_event(self, state):
        """Test no event ever leaves a terminal state."""
        assert state.is_terminal
        for event in Event:
            assert transition(state, event) is state

    def test_invalid_event_raises(self):
        """Test events undefined for a non-terminal state are rejected."""
        with pytest.raises(InvalidTransition):
            transition(ConnectionState.INIT, Event.UPDATE_OK)
        with pytest.raises(InvalidTransition):
            transition(ConnectionState.ATTACHED, Event.CONNECT)

    def test_non_terminal_states(self):
        """Test the non-terminal states are reported as such."""
        for state in (
            ConnectionState.INIT,
            ConnectionState.CONNECTING,
            ConnectionState.ATTACHED,
            ConnectionState.ATTACHED_UPDATE_ERROR,
        ):
            assert not state.is_terminal
