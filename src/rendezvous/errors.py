"""Rendezvous broker exception hierarchy.

Waiting-slot and pairing errors are recovered inside the broker. Only
ContentionExceeded and PartnerUnreachable are reported to clients, as
``error`` events carrying the ``code`` attribute below.
"""


class RendezvousError(Exception):
    """Base class for all broker errors."""

    code = "INTERNAL_ERROR"


class AlreadyWaiting(RendezvousError):
    """find_partner called while the connection is already waiting or paired."""

    code = "ALREADY_WAITING"


class NotWaiting(RendezvousError):
    """cancel_search called outside the waiting state (treated as a no-op)."""

    code = "NOT_WAITING"


class ContentionExceeded(RendezvousError):
    """Matchmaker retry budget exhausted under concurrent arrivals.

    Transient: the client should simply call find_partner again.
    """

    code = "CONTENTION_EXCEEDED"


class PartnerUnreachable(RendezvousError):
    """The peer connection to the assigned partner could not be established."""

    code = "PARTNER_UNREACHABLE"


class InvalidTransition(RendezvousError):
    """A client event is not allowed in the current lifecycle state."""

    def __init__(self, state: str, event: str) -> None:
        super().__init__(f"Invalid transition: {event} in state {state}")
        self.state = state
        self.event = event
