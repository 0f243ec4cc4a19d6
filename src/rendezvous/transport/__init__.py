"""Transport layer for broker client connections.

Provides abstraction over transport types for client communication.
"""

from rendezvous.transport.base import ClientConnection, Transport
from rendezvous.transport.websocket_transport import (
    WebSocketConnection,
    WebSocketTransport,
)

__all__ = [
    "ClientConnection",
    "Transport",
    "WebSocketConnection",
    "WebSocketTransport",
]
