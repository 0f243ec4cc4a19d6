"""Client-facing WebSocket server for the broker.

Provides persistent WebSocket connections between clients and the broker.
Each connection is one client; closing it is the implicit disconnect event.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator

import websockets
from pydantic import ValidationError
from websockets.asyncio.server import Server, ServerConnection
from websockets.protocol import State

from rendezvous.transport.base import ClientConnection, Transport
from rendezvous.transport.websocket_protocol import (
    ClientMessage,
    ErrorMessage,
    ServerMessage,
    SessionStartMessage,
    parse_client_message,
)

logger = logging.getLogger(__name__)

# Close code sent when max_connections is reached (RFC 6455 "try again later")
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketConnection(ClientConnection):
    """WebSocket-based client connection.

    Handles JSON serialization of rendezvous messages over one WebSocket.
    """

    def __init__(self, websocket: ServerConnection, connection_id: str) -> None:
        """Wrap an accepted socket; ``connection_id`` becomes the connection handle."""
        self._websocket = websocket
        self._connection_id = connection_id
        self._connected = True

        logger.info(
            "WebSocket connection initialized",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        return self._connected and self._websocket.state == State.OPEN

    async def send_message(self, message: ServerMessage) -> None:
        """Send a server message to the client.

        Raises:
            ConnectionError: If the client has gone away
        """
        if not self.is_connected:
            raise ConnectionError(f"Client {self._connection_id} is disconnected")

        try:
            await self._websocket.send(message.model_dump_json())
            logger.debug(
                "Message sent",
                extra={"connection_id": self._connection_id, "type": message.type},
            )
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"Client {self._connection_id} closed: {e}") from e

    async def receive_messages(self) -> AsyncIterator[ClientMessage]:
        """Receive validated client messages until the connection closes.

        Yields:
            ClientMessage: Next message from the client
        """
        try:
            async for raw_message in self._websocket:
                if not isinstance(raw_message, str):
                    logger.warning(
                        "Binary frame ignored",
                        extra={"connection_id": self._connection_id},
                    )
                    continue

                try:
                    data = json.loads(raw_message)
                    if not isinstance(data, dict):
                        raise ValueError("message must be a JSON object")
                    message = parse_client_message(data)
                except (json.JSONDecodeError, ValidationError, ValueError) as e:
                    logger.warning(
                        "Invalid client message",
                        extra={"connection_id": self._connection_id, "error": str(e)},
                    )
                    await self.send_error(f"Invalid message: {e}", code="INVALID_MESSAGE")
                    continue

                logger.debug(
                    "Message received",
                    extra={"connection_id": self._connection_id, "type": message.type},
                )
                yield message

        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "Client closed connection",
                extra={"connection_id": self._connection_id},
            )
        finally:
            self._connected = False

    async def send_session_start(self) -> None:
        """Send connection accepted notification to client."""
        await self._send_quietly(SessionStartMessage(session_id=self._connection_id))

    async def send_error(self, error_msg: str, code: str = "INTERNAL_ERROR") -> None:
        """Send error message to client, ignoring a closed connection."""
        await self._send_quietly(ErrorMessage(message=error_msg, code=code))

    async def _send_quietly(self, message: ServerMessage) -> None:
        try:
            await self.send_message(message)
        except ConnectionError as e:
            logger.debug(
                "Dropped message for closed connection",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )

    async def close(self) -> None:
        if not self._connected:
            return

        logger.info("Closing WebSocket connection", extra={"connection_id": self._connection_id})

        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during connection close",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
        finally:
            self._connected = False


class WebSocketTransport(Transport):
    """Accepts broker clients over WebSocket.

    Manages WebSocket server lifecycle and creates WebSocketConnection
    instances for incoming clients.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 3003,
        max_connections: int = 1000,
    ) -> None:
        """Configure the listener; nothing binds until start().

        Args:
            host: Bind host address
            port: Bind port
            max_connections: Clients beyond this are closed with 1013
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._server: Server | None = None
        self._running = False
        self._connection_queue: asyncio.Queue[WebSocketConnection] = asyncio.Queue()
        self._active: set[str] = set()

        logger.info(
            "Client listener configured",
            extra={"host": host, "port": port, "limit": max_connections},
        )

    @property
    def transport_type(self) -> str:
        return "websocket"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_connections(self) -> int:
        return len(self._active)

    async def start(self) -> None:
        """Bind the listener.

        Raises:
            RuntimeError: If already listening or the server cannot start
            OSError: If the port is taken
        """
        if self._running:
            raise RuntimeError(f"Already listening on port {self._port}")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=2**16,  # rendezvous messages are tiny
            )
            self._running = True

            logger.info("WebSocket server started", extra={"host": self._host, "port": self._port})

        except OSError as e:
            logger.error(
                "Port unavailable",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Cannot listen on {self._host}:{self._port}: {e}") from e

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Closing client listener")

        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("Client listener closed")

    async def accept_connection(self) -> ClientConnection:
        if not self._running:
            raise RuntimeError("Listener not started")

        return await self._connection_queue.get()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Register a new client and hold its socket open until it leaves."""
        if len(self._active) >= self._max_connections:
            logger.warning(
                "Connection limit reached, rejecting client",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="broker at capacity")
            return

        connection_id = f"ws-{uuid.uuid4().hex[:12]}"
        self._active.add(connection_id)

        logger.info(
            "Client connected",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

        connection = WebSocketConnection(websocket, connection_id)
        await connection.send_session_start()
        await self._connection_queue.put(connection)

        # Keep the handler alive until the client goes away
        try:
            await websocket.wait_closed()
        finally:
            self._active.discard(connection_id)
            logger.info("WebSocket connection closed", extra={"connection_id": connection_id})
