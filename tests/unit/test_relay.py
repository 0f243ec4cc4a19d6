"""Unit tests for the cross-broker event relay."""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from rendezvous.identity import SessionIdentity
from rendezvous.lifecycle import Notification
from rendezvous.relay import RedisEventRelay, RelayEnvelope
from rendezvous.transport.websocket_protocol import (
    PairedMessage,
    ServerMessage,
    SessionEndedMessage,
)


class FakePubSub:
    """Pub/sub stub yielding queued raw messages."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.subscribe = AsyncMock()
        self.unsubscribe = AsyncMock()
        self.close = AsyncMock()

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            yield await self.queue.get()


@pytest.fixture
def initiator() -> SessionIdentity:
    return SessionIdentity(
        connection_handle="ws-bob", peer_address="peer-bob", broker_id="broker-1"
    )


@pytest.fixture
def receiver() -> SessionIdentity:
    return SessionIdentity(
        connection_handle="ws-alice", peer_address="peer-alice", broker_id="broker-2"
    )


@pytest.fixture
def pubsub() -> FakePubSub:
    return FakePubSub()


@pytest.fixture
def mock_redis(pubsub: FakePubSub) -> MagicMock:
    redis_mock = MagicMock()
    redis_mock.publish = AsyncMock(return_value=1)
    redis_mock.pubsub = MagicMock(return_value=pubsub)
    return redis_mock


@pytest.fixture
def relay(mock_redis: MagicMock) -> RedisEventRelay:
    return RedisEventRelay(mock_redis, broker_id="broker-1", channel_prefix="test:")


class RecordingHandler:
    def __init__(self) -> None:
        self.calls: list[
            tuple[str, ServerMessage, SessionIdentity | None, SessionIdentity | None]
        ] = []
        self.received = asyncio.Event()

    async def __call__(
        self,
        target: str,
        message: ServerMessage,
        sender: SessionIdentity | None,
        target_identity: SessionIdentity | None,
    ) -> None:
        self.calls.append((target, message, sender, target_identity))
        self.received.set()


class TestRedisEventRelay:
    """Test publishing and receiving relayed notifications."""

    def test_channel_for(self, relay: RedisEventRelay) -> None:
        assert relay.channel_for("broker-2") == "test:broker:broker-2"

    async def test_publish(
        self,
        relay: RedisEventRelay,
        mock_redis: MagicMock,
        initiator: SessionIdentity,
        receiver: SessionIdentity,
    ) -> None:
        """Test notifications go to the channel of the target's broker."""
        message = PairedMessage(role="receiver", partner_address="peer-bob")

        await relay.publish(Notification(receiver, message, sender=initiator))

        channel, payload = mock_redis.publish.call_args.args
        assert channel == "test:broker:broker-2"
        envelope = RelayEnvelope.model_validate_json(payload)
        assert envelope.target == "ws-alice"
        assert envelope.message == message.model_dump()
        assert envelope.sender is not None
        assert SessionIdentity.from_json(envelope.sender) == initiator
        assert envelope.target_identity is not None
        assert SessionIdentity.from_json(envelope.target_identity).same_entry(receiver)

    async def test_publish_without_listener(
        self, relay: RedisEventRelay, mock_redis: MagicMock, receiver: SessionIdentity
    ) -> None:
        """Test publishing to a broker that is gone is reported."""
        mock_redis.publish.return_value = 0

        with pytest.raises(ConnectionError, match="No broker listening"):
            await relay.publish(Notification(receiver, SessionEndedMessage()))

    async def test_publish_failure(
        self, relay: RedisEventRelay, mock_redis: MagicMock, receiver: SessionIdentity
    ) -> None:
        mock_redis.publish.side_effect = OSError("connection reset")

        with pytest.raises(ConnectionError, match="Relay publish failed"):
            await relay.publish(Notification(receiver, SessionEndedMessage()))

    async def test_handle_raw(
        self, relay: RedisEventRelay, initiator: SessionIdentity, receiver: SessionIdentity
    ) -> None:
        """Test a valid envelope reaches the handler decoded."""
        handler = RecordingHandler()
        relay._handler = handler
        envelope = RelayEnvelope(
            target="ws-alice",
            target_identity=receiver.to_json(),
            sender=initiator.to_json(),
            message=SessionEndedMessage().model_dump(),
        )

        await relay.handle_raw(envelope.model_dump_json())

        assert handler.calls == [("ws-alice", SessionEndedMessage(), initiator, receiver)]

    async def test_handle_raw_invalid(self, relay: RedisEventRelay) -> None:
        """Test invalid envelopes are dropped."""
        handler = RecordingHandler()
        relay._handler = handler

        await relay.handle_raw("not json")
        await relay.handle_raw(json.dumps({"target": "ws-1", "message": {"type": "bogus"}}))

        assert handler.calls == []

    async def test_start_and_stop(
        self,
        relay: RedisEventRelay,
        pubsub: FakePubSub,
        initiator: SessionIdentity,
    ) -> None:
        """Test the listener subscribes and dispatches published messages."""
        handler = RecordingHandler()

        await relay.start(handler)
        assert relay.is_running
        pubsub.subscribe.assert_awaited_once_with("test:broker:broker-1")

        envelope = RelayEnvelope(
            target="ws-alice",
            sender=initiator.to_json(),
            message=SessionEndedMessage().model_dump(),
        )
        await pubsub.queue.put({"type": "subscribe", "data": 1})
        await pubsub.queue.put({"type": "message", "data": envelope.model_dump_json()})
        await asyncio.wait_for(handler.received.wait(), timeout=1.0)

        assert len(handler.calls) == 1

        await relay.stop()
        assert not relay.is_running
        pubsub.close.assert_awaited_once()

    async def test_start_twice(self, relay: RedisEventRelay) -> None:
        await relay.start(RecordingHandler())

        with pytest.raises(RuntimeError, match="already running"):
            await relay.start(RecordingHandler())

        await relay.stop()
