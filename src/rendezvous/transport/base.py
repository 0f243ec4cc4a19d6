"""Base transport abstraction for client connections.

Defines the interface a transport implementation must provide so the broker
can exchange rendezvous messages with clients independently of the wire.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from rendezvous.transport.websocket_protocol import ClientMessage, ServerMessage


class ClientConnection(ABC):
    """Base class for transport-specific client connections."""

    @abstractmethod
    async def send_message(self, message: ServerMessage) -> None:
        """Send a server message to the client.

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    async def receive_messages(self) -> AsyncIterator[ClientMessage]:
        """Receive validated client messages until the connection closes.

        Invalid messages are reported to the client and skipped.

        Yields:
            ClientMessage: Next message from the client
        """
        # Using yield to make this an async generator
        if False:
            yield

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Idempotent."""
        pass

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique connection handle for tracking and logging."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        pass


class Transport(ABC):
    """Base transport server.

    Manages the lifecycle of a transport and hands out a ClientConnection for
    each incoming client.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails (for network transports)
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close all connections."""
        pass

    @abstractmethod
    async def accept_connection(self) -> ClientConnection:
        """Wait for and return the next client connection.

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
