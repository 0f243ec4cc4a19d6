"""Session identities and their registry.

A SessionIdentity is created when a client announces readiness to be matched
and is released when the client returns to idle or disconnects.
"""

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionIdentity:
    """A client that asked to be matched.

    Attributes:
        connection_handle: Unique id of the live client connection
        peer_address: Opaque dial target handed to the peer-connection library
        arrival_ts: Unix timestamp of the find_partner request
        broker_id: Broker process owning the client connection
        entry_id: Store-generated id once the identity occupies a shared slot
        search_id: Unique per find_partner request; tells a claimed entry apart
            from a later search by the same connection
    """

    connection_handle: str
    peer_address: str
    arrival_ts: float = field(default_factory=time.time)
    broker_id: str = "local"
    entry_id: str | None = None
    search_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def same_connection(self, other: "SessionIdentity | None") -> bool:
        """Check whether ``other`` refers to the same client connection."""
        return other is not None and other.connection_handle == self.connection_handle

    def same_entry(self, other: "SessionIdentity | None") -> bool:
        """Check whether ``other`` is this very search, not just the same connection."""
        if other is None or not self.same_connection(other):
            return False
        return other.search_id == self.search_id

    def to_json(self) -> str:
        """Serialize to JSON string for store and relay payloads.

        Returns:
            JSON-encoded identity
        """
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, data: str) -> "SessionIdentity":
        """Deserialize from JSON string.

        Args:
            data: JSON-encoded identity

        Returns:
            Deserialized SessionIdentity

        Raises:
            ValueError: If JSON is invalid or missing required fields
        """
        try:
            obj = json.loads(data)
            return cls(**obj)
        except (json.JSONDecodeError, TypeError) as e:
            raise ValueError(f"Invalid session identity JSON: {e}") from e


class IdentityRegistry:
    """Bookkeeping for the identities held by one broker process."""

    def __init__(self, broker_id: str = "local") -> None:
        self.broker_id = broker_id
        self._identities: dict[str, SessionIdentity] = {}

    def register(
        self, peer_address: str, connection_handle: str | None = None
    ) -> SessionIdentity:
        """Create and track an identity for a client ready to be matched.

        Args:
            peer_address: Address the partner will dial (or expect a call from)
            connection_handle: Transport connection id; generated when omitted

        Returns:
            The new SessionIdentity
        """
        handle = connection_handle or f"conn-{uuid.uuid4().hex[:12]}"
        identity = SessionIdentity(
            connection_handle=handle,
            peer_address=peer_address,
            broker_id=self.broker_id,
        )
        self._identities[handle] = identity
        logger.debug(
            "Identity registered",
            extra={"connection_handle": handle, "peer_address": peer_address},
        )
        return identity

    def release(self, identity: SessionIdentity) -> None:
        """Drop all references to ``identity``. Releasing twice is a no-op."""
        if self._identities.pop(identity.connection_handle, None) is not None:
            logger.debug(
                "Identity released",
                extra={"connection_handle": identity.connection_handle},
            )

    def get(self, connection_handle: str) -> SessionIdentity | None:
        return self._identities.get(connection_handle)

    def __contains__(self, connection_handle: object) -> bool:
        return connection_handle in self._identities

    def __len__(self) -> int:
        return len(self._identities)
