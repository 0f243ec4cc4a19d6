"""Cross-broker notification relay over Redis pub/sub.

With a shared Redis waiting slot, the party a broker claims may be connected
to a different broker. Each broker subscribes to its own channel
(``<prefix>broker:<broker_id>``); notifications for remote parties are
published there as JSON envelopes and applied by the owning broker's
lifecycle manager.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from rendezvous.identity import SessionIdentity
from rendezvous.lifecycle import Notification
from rendezvous.transport.websocket_protocol import ServerMessage, parse_server_message

logger = logging.getLogger(__name__)

RelayHandler = Callable[
    [str, ServerMessage, SessionIdentity | None, SessionIdentity | None], Awaitable[None]
]


class RelayEnvelope(BaseModel):
    """Notification addressed to a connection owned by another broker."""

    target: str = Field(..., description="Target connection handle")
    target_identity: str | None = Field(
        default=None, description="Target identity JSON as the sender saw it"
    )
    sender: str | None = Field(default=None, description="Sender identity JSON")
    message: dict[str, Any] = Field(..., description="Server message payload")


class RedisEventRelay:
    """Publishes and receives cross-broker notifications.

    Attributes:
        broker_id: This broker's id (names the channel it listens on)
        channel_prefix: Prefix shared by all brokers of one deployment
    """

    def __init__(self, redis: Any, broker_id: str, channel_prefix: str = "rendezvous:") -> None:
        """Initialize relay.

        Args:
            redis: Connected redis.asyncio client
            broker_id: This broker's id
            channel_prefix: Channel name prefix
        """
        self._redis = redis
        self.broker_id = broker_id
        self.channel_prefix = channel_prefix

        self._pubsub: Any = None
        self._listener: asyncio.Task[None] | None = None
        self._handler: RelayHandler | None = None

    def channel_for(self, broker_id: str) -> str:
        return f"{self.channel_prefix}broker:{broker_id}"

    @property
    def is_running(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def publish(self, notification: Notification) -> None:
        """Publish a notification to the broker owning its target.

        Raises:
            ConnectionError: If publishing fails or no broker is listening
        """
        target = notification.target
        envelope = RelayEnvelope(
            target=target.connection_handle,
            target_identity=target.to_json(),
            sender=notification.sender.to_json() if notification.sender else None,
            message=notification.message.model_dump(),
        )
        channel = self.channel_for(target.broker_id)

        try:
            receivers = await self._redis.publish(channel, envelope.model_dump_json())
        except Exception as e:
            logger.error(f"Failed to publish to {channel}: {e}")
            raise ConnectionError(f"Relay publish failed: {e}") from e

        if not receivers:
            raise ConnectionError(f"No broker listening on {channel}")

        logger.debug(
            f"Relayed '{notification.message.type}' to {target.connection_handle} "
            f"via {channel}"
        )

    async def start(self, handler: RelayHandler) -> None:
        """Subscribe to this broker's channel and start dispatching to ``handler``.

        Raises:
            RuntimeError: If the relay is already running
            ConnectionError: If subscribing fails
        """
        if self.is_running:
            raise RuntimeError("Relay is already running")

        self._handler = handler
        channel = self.channel_for(self.broker_id)
        try:
            self._pubsub = self._redis.pubsub()
            await self._pubsub.subscribe(channel)
        except Exception as e:
            logger.error(f"Failed to subscribe to {channel}: {e}")
            raise ConnectionError(f"Relay subscribe failed: {e}") from e

        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Relay listening on {channel}")

    async def stop(self) -> None:
        """Stop listening. Idempotent."""
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
                await self._pubsub.close()
            except Exception as e:
                logger.warning(f"Error closing relay subscription: {e}")
            self._pubsub = None

    async def _listen(self) -> None:
        async for raw in self._pubsub.listen():
            if raw.get("type") != "message":
                continue
            await self.handle_raw(raw["data"])

    async def handle_raw(self, data: str) -> None:
        """Decode one published envelope and hand it to the handler."""
        try:
            envelope = RelayEnvelope.model_validate_json(data)
            message = parse_server_message(envelope.message)
            sender = SessionIdentity.from_json(envelope.sender) if envelope.sender else None
            target_identity = (
                SessionIdentity.from_json(envelope.target_identity)
                if envelope.target_identity
                else None
            )
        except (ValidationError, ValueError) as e:
            logger.warning(f"Dropped invalid relay envelope: {e}")
            return

        if self._handler is None:
            return

        try:
            await self._handler(envelope.target, message, sender, target_identity)
        except Exception as e:
            logger.error(
                f"Relay handler failed for '{message.type}' to {envelope.target}: {e}",
                exc_info=True,
            )
