"""Per-connection lifecycle state machine.

State Transitions:
- IDLE → WAITING (find_partner, slot was empty)
- IDLE → PAIRED (find_partner, claimed a waiting party)
- WAITING → PAIRED (claimed by a later arrival)
- WAITING → IDLE (cancel_search or disconnect)
- PAIRED → IDLE (end_session, disconnect, peer failure, or partner left)

Each transition is a pure function of (state, event) returning the new state
and the effects the lifecycle manager must apply. The function performs no
I/O and touches no shared state.
"""

from dataclasses import dataclass
from enum import Enum

from rendezvous.errors import InvalidTransition


class ClientState(Enum):
    """Lifecycle state of one client connection.

    States:
    - IDLE: Connected, not searching
    - WAITING: Occupies the waiting slot
    - PAIRED: Member of an active pairing
    """

    IDLE = "idle"
    WAITING = "waiting"
    PAIRED = "paired"


class ClientEvent(Enum):
    """Events applied to a connection's state."""

    SEARCH = "search"  # find_partner found the slot empty
    MATCH = "match"  # a pairing including this connection formed
    CANCEL = "cancel"  # cancel_search
    END = "end"  # end_session, or peer connection closed
    PEER_FAILED = "peer_failed"  # peer connection could not be established
    PARTNER_LEFT = "partner_left"  # the other side ended, failed or disconnected
    DISCONNECT = "disconnect"  # client connection dropped


class Effect(Enum):
    """Side effects requested by a transition."""

    VACATE_SLOT = "vacate_slot"
    TEAR_DOWN_PAIRING = "tear_down_pairing"
    NOTIFY_PARTNER_ENDED = "notify_partner_ended"
    NOTIFY_PARTNER_DISCONNECTED = "notify_partner_disconnected"
    NOTIFY_PARTNER_UNREACHABLE = "notify_partner_unreachable"
    RELEASE_IDENTITY = "release_identity"


@dataclass(frozen=True)
class Transition:
    """Result of applying an event."""

    state: ClientState
    effects: tuple[Effect, ...] = ()


_PAIRED_EXIT = (Effect.TEAR_DOWN_PAIRING,)

TRANSITIONS: dict[tuple[ClientState, ClientEvent], Transition] = {
    (ClientState.IDLE, ClientEvent.SEARCH): Transition(ClientState.WAITING),
    (ClientState.IDLE, ClientEvent.MATCH): Transition(ClientState.PAIRED),
    (ClientState.IDLE, ClientEvent.DISCONNECT): Transition(ClientState.IDLE),
    (ClientState.WAITING, ClientEvent.MATCH): Transition(ClientState.PAIRED),
    (ClientState.WAITING, ClientEvent.CANCEL): Transition(
        ClientState.IDLE, (Effect.VACATE_SLOT, Effect.RELEASE_IDENTITY)
    ),
    (ClientState.WAITING, ClientEvent.DISCONNECT): Transition(
        ClientState.IDLE, (Effect.VACATE_SLOT, Effect.RELEASE_IDENTITY)
    ),
    (ClientState.PAIRED, ClientEvent.END): Transition(
        ClientState.IDLE,
        (*_PAIRED_EXIT, Effect.NOTIFY_PARTNER_ENDED, Effect.RELEASE_IDENTITY),
    ),
    (ClientState.PAIRED, ClientEvent.PEER_FAILED): Transition(
        ClientState.IDLE,
        (*_PAIRED_EXIT, Effect.NOTIFY_PARTNER_UNREACHABLE, Effect.RELEASE_IDENTITY),
    ),
    (ClientState.PAIRED, ClientEvent.DISCONNECT): Transition(
        ClientState.IDLE,
        (*_PAIRED_EXIT, Effect.NOTIFY_PARTNER_DISCONNECTED, Effect.RELEASE_IDENTITY),
    ),
    (ClientState.PAIRED, ClientEvent.PARTNER_LEFT): Transition(
        ClientState.IDLE, (*_PAIRED_EXIT, Effect.RELEASE_IDENTITY)
    ),
}


def transition(state: ClientState, event: ClientEvent) -> Transition:
    """Apply ``event`` to ``state``.

    Args:
        state: Current state
        event: Event to apply

    Returns:
        Target state and effects to perform

    Raises:
        InvalidTransition: If ``event`` is not allowed in ``state``
    """
    result = TRANSITIONS.get((state, event))
    if result is None:
        raise InvalidTransition(state.value, event.value)
    return result
