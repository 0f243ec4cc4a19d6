"""Matchmaking over the waiting slot.

The arriving party claims whoever is waiting and becomes the initiator (the
side that originates the peer connection); the party that was waiting becomes
the receiver. If nobody is waiting the arriving party occupies the slot.

Claiming uses only the slot's atomic primitives. A read of the occupant
followed by a separate delete would let two arrivals claim the same waiting
party, leaving one of them waiting for a call that never comes.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from rendezvous.errors import ContentionExceeded
from rendezvous.identity import SessionIdentity
from rendezvous.slot import WaitingSlot

logger = logging.getLogger(__name__)


class Role(Enum):
    """Role in a pairing.

    - INITIATOR: dials the partner's peer address
    - RECEIVER: expects an incoming call from the partner
    """

    INITIATOR = "initiator"
    RECEIVER = "receiver"


@dataclass(frozen=True)
class Paired:
    """Outcome: the caller was matched immediately."""

    role: Role
    partner: SessionIdentity


@dataclass(frozen=True)
class Waiting:
    """Outcome: the caller now occupies the waiting slot."""


MatchOutcome = Paired | Waiting


class Matchmaker:
    """Claim / pair / occupy algorithm over a WaitingSlot.

    Attributes:
        slot: The waiting slot this matchmaker exclusively mutates
        max_attempts: Claim-then-occupy attempts before ContentionExceeded
    """

    def __init__(self, slot: WaitingSlot, max_attempts: int = 2) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.slot = slot
        self.max_attempts = max_attempts

    async def find_partner(self, identity: SessionIdentity) -> MatchOutcome:
        """Pair ``identity`` with the waiting party or make it wait.

        Args:
            identity: The arriving party

        Returns:
            Paired(INITIATOR, partner) if someone was waiting, else Waiting()

        Raises:
            ContentionExceeded: If the slot kept flipping between the claim and
                occupy steps for every attempt
            ConnectionError: If a shared slot backend is unreachable
        """
        for attempt in range(1, self.max_attempts + 1):
            partner = await self.slot.try_claim()

            # A stale entry of this same connection counts as an empty slot
            if partner is not None and not partner.same_connection(identity):
                logger.info(
                    "Match found",
                    extra={
                        "initiator": identity.connection_handle,
                        "receiver": partner.connection_handle,
                        "attempt": attempt,
                    },
                )
                return Paired(role=Role.INITIATOR, partner=partner)

            if await self.slot.try_occupy(identity):
                logger.info(
                    "Party waiting for partner",
                    extra={"connection_handle": identity.connection_handle},
                )
                return Waiting()

            logger.debug(
                "Slot occupied between claim and occupy, retrying",
                extra={"connection_handle": identity.connection_handle, "attempt": attempt},
            )

        raise ContentionExceeded(
            f"Waiting slot contended for {self.max_attempts} attempts "
            f"(connection {identity.connection_handle})"
        )
