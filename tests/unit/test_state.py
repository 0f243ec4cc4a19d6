"""Unit tests for the client lifecycle state machine."""

import pytest

from rendezvous.errors import InvalidTransition
from rendezvous.state import ClientEvent, ClientState, Effect, transition


def test_search_from_idle() -> None:
    """Test IDLE → WAITING on search."""
    result = transition(ClientState.IDLE, ClientEvent.SEARCH)
    assert result.state is ClientState.WAITING
    assert result.effects == ()


@pytest.mark.parametrize("state", [ClientState.IDLE, ClientState.WAITING])
def test_match(state: ClientState) -> None:
    """Test an arriving initiator (IDLE) or waiting receiver becomes PAIRED."""
    assert transition(state, ClientEvent.MATCH).state is ClientState.PAIRED


@pytest.mark.parametrize("event", [ClientEvent.CANCEL, ClientEvent.DISCONNECT])
def test_leave_waiting(event: ClientEvent) -> None:
    """Test cancel and disconnect both vacate the slot."""
    result = transition(ClientState.WAITING, event)
    assert result.state is ClientState.IDLE
    assert result.effects == (Effect.VACATE_SLOT, Effect.RELEASE_IDENTITY)


@pytest.mark.parametrize(
    ("event", "notify"),
    [
        (ClientEvent.END, Effect.NOTIFY_PARTNER_ENDED),
        (ClientEvent.DISCONNECT, Effect.NOTIFY_PARTNER_DISCONNECTED),
        (ClientEvent.PEER_FAILED, Effect.NOTIFY_PARTNER_UNREACHABLE),
    ],
)
def test_leave_pairing_notifies_partner(event: ClientEvent, notify: Effect) -> None:
    """Test every way out of a pairing tears it down and tells the partner."""
    result = transition(ClientState.PAIRED, event)
    assert result.state is ClientState.IDLE
    assert Effect.TEAR_DOWN_PAIRING in result.effects
    assert notify in result.effects
    assert Effect.RELEASE_IDENTITY in result.effects


def test_partner_left_does_not_notify() -> None:
    """Test the remaining side is torn down without notifying back."""
    result = transition(ClientState.PAIRED, ClientEvent.PARTNER_LEFT)
    assert result.state is ClientState.IDLE
    assert result.effects == (Effect.TEAR_DOWN_PAIRING, Effect.RELEASE_IDENTITY)


def test_disconnect_from_idle_is_noop() -> None:
    result = transition(ClientState.IDLE, ClientEvent.DISCONNECT)
    assert result.state is ClientState.IDLE
    assert result.effects == ()


@pytest.mark.parametrize(
    ("state", "event"),
    [
        (ClientState.IDLE, ClientEvent.CANCEL),
        (ClientState.IDLE, ClientEvent.END),
        (ClientState.WAITING, ClientEvent.SEARCH),
        (ClientState.WAITING, ClientEvent.END),
        (ClientState.PAIRED, ClientEvent.SEARCH),
        (ClientState.PAIRED, ClientEvent.CANCEL),
        (ClientState.PAIRED, ClientEvent.MATCH),
    ],
)
def test_invalid_transitions(state: ClientState, event: ClientEvent) -> None:
    """Test events that are not allowed in a state are rejected."""
    with pytest.raises(InvalidTransition) as exc_info:
        transition(state, event)

    assert exc_info.value.state == state.value
    assert exc_info.value.event == event.value
