"""WebSocket CLI client for the rendezvous broker.

Connects to a broker, searches for a partner and prints pairing events.
The peer-connection itself is out of band: the client only reports the
partner address it was paired with and relays peer state changes typed
by the user.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

import websockets
from pydantic import BaseModel, ValidationError
from websockets.asyncio.client import ClientConnection

from rendezvous.transport.websocket_protocol import (
    CancelledMessage,
    CancelSearchMessage,
    EndSessionMessage,
    ErrorMessage,
    FindPartnerMessage,
    PairedMessage,
    PartnerDisconnectedMessage,
    PeerStateMessage,
    ServerMessage,
    SessionEndedMessage,
    SessionStartMessage,
    WaitingMessage,
    parse_server_message,
)

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /find          - Search for a partner
  /cancel        - Cancel the search
  /end           - End the current session
  /peer <state>  - Report peer-connection state (connected/disconnected/failed/closed)
  /quit          - Exit client
  /help          - Show this help
"""


class RendezvousClient:
    """WebSocket CLI client for broker communication."""

    def __init__(
        self,
        server_url: str,
        peer_address: str,
        auto_search: bool = True,
        verbose: bool = False,
    ) -> None:
        """Initialize CLI client.

        Args:
            server_url: Broker WebSocket URL (e.g., ws://localhost:3003)
            peer_address: Address handed to the partner for the direct connection
            auto_search: Send find_partner as soon as the session starts
            verbose: Enable verbose logging
        """
        self.server_url = server_url
        self.peer_address = peer_address
        self.auto_search = auto_search
        self.verbose = verbose
        self.session_id: str | None = None
        self.role: str | None = None
        self.partner_address: str | None = None
        self.waiting = False
        self.running = True

        level = logging.DEBUG if verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    async def send(self, websocket: ClientConnection, message: BaseModel) -> None:
        await websocket.send(message.model_dump_json())
        logger.debug(f"Sent: {message.model_dump_json()}")

    async def find_partner(self, websocket: ClientConnection) -> None:
        await self.send(websocket, FindPartnerMessage(peer_address=self.peer_address))

    def handle_message(self, message_data: str) -> ServerMessage | None:
        """Handle incoming message from the broker.

        Args:
            message_data: Raw JSON message from the broker

        Returns:
            Parsed message, or None if it could not be parsed
        """
        try:
            message = parse_server_message(json.loads(message_data))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to handle message: {e}")
            return None

        if isinstance(message, SessionStartMessage):
            self.session_id = message.session_id
            print(f"\nSession started: {message.session_id}")

        elif isinstance(message, WaitingMessage):
            self.waiting = True
            print("\nWaiting for a partner...")

        elif isinstance(message, PairedMessage):
            self.waiting = False
            self.role = message.role
            self.partner_address = message.partner_address
            if message.role == "initiator":
                print(f"\nPaired: call {message.partner_address}")
            else:
                print(f"\nPaired: expect a call from {message.partner_address}")

        elif isinstance(message, CancelledMessage):
            self.waiting = False
            print("\nSearch cancelled")

        elif isinstance(message, (SessionEndedMessage, PartnerDisconnectedMessage)):
            self._clear_pairing()
            reason = message.reason if isinstance(message, SessionEndedMessage) else "disconnected"
            print(f"\nSession ended: partner {reason}")

        elif isinstance(message, ErrorMessage):
            logger.error(f"Broker error [{message.code}]: {message.message}")
            if message.code == "PARTNER_UNREACHABLE":
                self._clear_pairing()
            elif message.code == "CONTENTION_EXCEEDED":
                self.waiting = False
            print(f"\nError: {message.message}")

        return message

    def _clear_pairing(self) -> None:
        self.role = None
        self.partner_address = None

    async def receive_messages(self, websocket: ClientConnection) -> None:
        """Receive and handle messages from the broker.

        Args:
            websocket: WebSocket connection
        """
        try:
            async for raw in websocket:
                message_str = raw.decode("utf-8") if isinstance(raw, bytes) else raw
                message = self.handle_message(message_str)
                if isinstance(message, SessionStartMessage) and self.auto_search:
                    await self.find_partner(websocket)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by broker")
        finally:
            self.running = False

    async def handle_command(self, websocket: ClientConnection, text: str) -> None:
        """Handle one line of user input."""
        command, _, argument = text.lstrip("/").partition(" ")
        command = command.lower()

        if command == "quit":
            self.running = False
        elif command == "help":
            print(HELP_TEXT)
        elif command == "find":
            await self.find_partner(websocket)
        elif command == "cancel":
            await self.send(websocket, CancelSearchMessage())
        elif command == "end":
            await self.send(websocket, EndSessionMessage())
            self._clear_pairing()
        elif command == "peer":
            try:
                await self.send(websocket, PeerStateMessage(state=argument.strip()))  # type: ignore[arg-type]
            except ValidationError:
                print(f"Unknown peer state: {argument.strip()}")
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self, websocket: ClientConnection) -> None:
        """Handle user input from stdin.

        Args:
            websocket: WebSocket connection
        """
        print("\n" + "=" * 60)
        print("Rendezvous CLI Client")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                self.running = False
                break

            text = text.strip()
            if text:
                await self.handle_command(websocket, text)

        await websocket.close()

    async def run(self) -> None:
        """Run the CLI client."""
        try:
            async with websockets.connect(self.server_url) as websocket:
                logger.info(f"Connected to {self.server_url}")

                def signal_handler() -> None:
                    self.running = False

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, signal_handler)

                try:
                    await asyncio.gather(
                        self.input_loop(websocket),
                        self.receive_messages(websocket),
                    )
                finally:
                    for sig in (signal.SIGINT, signal.SIGTERM):
                        loop.remove_signal_handler(sig)

        except OSError as e:
            logger.error(f"Client error: {e}")
            sys.exit(1)


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="CLI client for the rendezvous broker")
    parser.add_argument(
        "--url",
        type=str,
        default="ws://localhost:3003",
        help="Broker WebSocket URL (default: ws://localhost:3003)",
    )
    parser.add_argument(
        "--peer-address",
        type=str,
        required=True,
        help="Peer-connection address to share with the partner",
    )
    parser.add_argument(
        "--no-search",
        action="store_true",
        help="Do not search automatically after connecting",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    client = RendezvousClient(
        server_url=args.url,
        peer_address=args.peer_address,
        auto_search=not args.no_search,
        verbose=args.verbose,
    )
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
