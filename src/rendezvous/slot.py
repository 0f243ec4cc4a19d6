"""Waiting slot abstraction and in-memory implementation.

The waiting slot holds at most one party looking for a match. Every
operation is atomic on its own: implementations never expose a separate
"read occupant" step that callers could combine with a later delete.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from rendezvous.identity import SessionIdentity

logger = logging.getLogger(__name__)


class WaitingSlot(ABC):
    """Single-occupant holding area for a party seeking a match."""

    @abstractmethod
    async def try_occupy(self, identity: SessionIdentity) -> bool:
        """Store ``identity`` if the slot is empty.

        Args:
            identity: Party that wants to wait for a partner

        Returns:
            True if the slot was empty and now holds ``identity``
        """
        pass

    @abstractmethod
    async def try_claim(self) -> SessionIdentity | None:
        """Atomically remove and return the occupant.

        Returns:
            The previous occupant, or None if the slot was empty
        """
        pass

    @abstractmethod
    async def vacate_if_owner(self, identity: SessionIdentity) -> bool:
        """Remove the occupant only if it is still ``identity``.

        Used for cancellation. Safe to race against try_claim: exactly one of
        the two succeeds.

        Returns:
            True if ``identity`` was removed by this call
        """
        pass

    @abstractmethod
    async def peek(self) -> SessionIdentity | None:
        """Return the current occupant for reporting. Never use it to claim."""
        pass

    async def keepalive(self, identity: SessionIdentity) -> bool:
        """Refresh the expiry of an occupant owned by this broker.

        Slots without expiry have nothing to refresh.

        Returns:
            True if ``identity`` still occupies the slot
        """
        return self.same_occupant(await self.peek(), identity)

    async def health_check(self) -> bool:
        """Check that the slot backend is reachable."""
        return True

    @property
    @abstractmethod
    def backend(self) -> str:
        """Backend identifier (e.g., 'memory', 'redis')."""
        pass

    @staticmethod
    def same_occupant(occupant: SessionIdentity | None, identity: SessionIdentity) -> bool:
        return occupant is not None and occupant.same_connection(identity)


class InMemoryWaitingSlot(WaitingSlot):
    """Waiting slot held in broker memory, guarded by an asyncio.Lock.

    Thread-safety: NOT thread-safe. Use from the broker's event loop only.
    """

    def __init__(self) -> None:
        self._occupant: SessionIdentity | None = None
        self._lock = asyncio.Lock()

    @property
    def backend(self) -> str:
        return "memory"

    async def try_occupy(self, identity: SessionIdentity) -> bool:
        async with self._lock:
            if self._occupant is not None:
                return False
            self._occupant = identity
            logger.debug(
                "Slot occupied", extra={"connection_handle": identity.connection_handle}
            )
            return True

    async def try_claim(self) -> SessionIdentity | None:
        async with self._lock:
            occupant, self._occupant = self._occupant, None
            if occupant is not None:
                logger.debug(
                    "Slot claimed", extra={"connection_handle": occupant.connection_handle}
                )
            return occupant

    async def vacate_if_owner(self, identity: SessionIdentity) -> bool:
        async with self._lock:
            if not self.same_occupant(self._occupant, identity):
                return False
            self._occupant = None
            logger.debug(
                "Slot vacated", extra={"connection_handle": identity.connection_handle}
            )
            return True

    async def peek(self) -> SessionIdentity | None:
        return self._occupant
