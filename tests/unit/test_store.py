"""Unit tests for the Redis-backed waiting slot.

Tests connection handling and that each slot operation maps onto a single
atomic Redis command.
"""

import json
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rendezvous.identity import SessionIdentity
from rendezvous.store import (
    KEEPALIVE_IF_OWNER_SCRIPT,
    VACATE_IF_OWNER_SCRIPT,
    RedisWaitingSlot,
)


@pytest.fixture
def alice() -> SessionIdentity:
    return SessionIdentity(
        connection_handle="ws-alice",
        peer_address="peer-alice",
        arrival_ts=1700000000.0,
        broker_id="broker-1",
    )


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create mock Redis client."""
    redis_mock = AsyncMock()
    redis_mock.ping = AsyncMock(return_value=True)
    redis_mock.incr = AsyncMock(return_value=1)
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.getdel = AsyncMock(return_value=None)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.eval = AsyncMock(return_value=1)
    redis_mock.close = AsyncMock()
    return redis_mock


@pytest.fixture
def mock_pool() -> AsyncMock:
    """Create mock connection pool."""
    pool_mock = AsyncMock()
    pool_mock.disconnect = AsyncMock()
    return pool_mock


@pytest.fixture
def slot() -> RedisWaitingSlot:
    """Create slot instance for testing."""
    return RedisWaitingSlot(
        redis_url="redis://localhost:6379",
        db=0,
        key_prefix="test:",
        slot_ttl_seconds=30,
        connection_pool_size=10,
    )


@pytest.fixture
async def connected_slot(
    slot: RedisWaitingSlot, mock_redis: AsyncMock, mock_pool: AsyncMock
) -> AsyncIterator[RedisWaitingSlot]:
    """Slot connected to the mock Redis client."""
    with (
        patch("rendezvous.store.ConnectionPool") as mock_pool_class,
        patch("rendezvous.store.aioredis.Redis") as mock_redis_class,
    ):
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis
        await slot.connect()
        yield slot


class TestRedisWaitingSlotConnection:
    """Test connection lifecycle."""

    def test_initialization(self, slot: RedisWaitingSlot) -> None:
        assert slot.backend == "redis"
        assert slot.slot_key == "test:slot"
        assert slot.sequence_key == "test:entry_seq"
        assert slot._connected is False

    @patch("rendezvous.store.ConnectionPool")
    @patch("rendezvous.store.aioredis.Redis")
    async def test_connect(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        slot: RedisWaitingSlot,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test Redis connection establishment."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis

        await slot.connect()
        await slot.connect()

        assert slot._connected is True
        assert slot.redis is mock_redis
        mock_redis.ping.assert_awaited_once()
        mock_pool_class.from_url.assert_called_once_with(
            "redis://localhost:6379", db=0, max_connections=10, decode_responses=True
        )

    @patch("rendezvous.store.ConnectionPool")
    @patch("rendezvous.store.aioredis.Redis")
    async def test_connect_failure(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        slot: RedisWaitingSlot,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test Redis connection failure."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis
        mock_redis.ping.side_effect = ConnectionError("Connection refused")

        with pytest.raises(ConnectionError, match="Redis connection failed"):
            await slot.connect()

        assert slot._connected is False

    async def test_disconnect(
        self,
        connected_slot: RedisWaitingSlot,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        await connected_slot.disconnect()
        await connected_slot.disconnect()

        assert connected_slot._connected is False
        mock_redis.close.assert_awaited_once()
        mock_pool.disconnect.assert_awaited_once()

    async def test_operations_require_connection(
        self, slot: RedisWaitingSlot, alice: SessionIdentity
    ) -> None:
        """Test slot operations fail fast when not connected."""
        with pytest.raises(ConnectionError, match="not connected"):
            await slot.try_claim()
        with pytest.raises(ConnectionError, match="not connected"):
            await slot.try_occupy(alice)
        with pytest.raises(ConnectionError, match="not connected"):
            _ = slot.redis

    async def test_health_check(
        self, connected_slot: RedisWaitingSlot, mock_redis: AsyncMock
    ) -> None:
        assert await connected_slot.health_check() is True

        mock_redis.ping.side_effect = ConnectionError("gone")
        assert await connected_slot.health_check() is False

    async def test_health_check_not_connected(self, slot: RedisWaitingSlot) -> None:
        assert await slot.health_check() is False


class TestRedisWaitingSlotOperations:
    """Test the atomic slot commands."""

    async def test_try_occupy(
        self,
        connected_slot: RedisWaitingSlot,
        mock_redis: AsyncMock,
        alice: SessionIdentity,
    ) -> None:
        """Test occupy is SET NX EX with a store-generated entry id."""
        mock_redis.incr.return_value = 42

        assert await connected_slot.try_occupy(alice) is True

        mock_redis.incr.assert_awaited_once_with("test:entry_seq")
        args, kwargs = mock_redis.set.call_args
        assert args[0] == "test:slot"
        assert kwargs == {"nx": True, "ex": 30}
        stored = json.loads(args[1])
        assert stored["connection_handle"] == "ws-alice"
        assert stored["broker_id"] == "broker-1"
        assert stored["entry_id"] == "42"
        assert stored["search_id"] == alice.search_id

    async def test_try_occupy_taken(
        self,
        connected_slot: RedisWaitingSlot,
        mock_redis: AsyncMock,
        alice: SessionIdentity,
    ) -> None:
        mock_redis.set.return_value = None

        assert await connected_slot.try_occupy(alice) is False

    async def test_try_claim(
        self,
        connected_slot: RedisWaitingSlot,
        mock_redis: AsyncMock,
        alice: SessionIdentity,
    ) -> None:
        """Test claim is a single GETDEL."""
        mock_redis.getdel.return_value = alice.to_json()

        assert await connected_slot.try_claim() == alice
        mock_redis.getdel.assert_awaited_once_with("test:slot")

    async def test_try_claim_empty(
        self, connected_slot: RedisWaitingSlot, mock_redis: AsyncMock
    ) -> None:
        assert await connected_slot.try_claim() is None

    async def test_try_claim_invalid_entry(
        self, connected_slot: RedisWaitingSlot, mock_redis: AsyncMock
    ) -> None:
        """Test a corrupt entry is discarded rather than paired with."""
        mock_redis.getdel.return_value = "not json"

        assert await connected_slot.try_claim() is None

    async def test_try_claim_redis_error(
        self, connected_slot: RedisWaitingSlot, mock_redis: AsyncMock
    ) -> None:
        mock_redis.getdel.side_effect = TimeoutError("timed out")

        with pytest.raises(ConnectionError, match="claim failed"):
            await connected_slot.try_claim()

    async def test_vacate_if_owner(
        self,
        connected_slot: RedisWaitingSlot,
        mock_redis: AsyncMock,
        alice: SessionIdentity,
    ) -> None:
        """Test vacate runs the compare-and-delete script."""
        assert await connected_slot.vacate_if_owner(alice) is True
        mock_redis.eval.assert_awaited_once_with(
            VACATE_IF_OWNER_SCRIPT, 1, "test:slot", "ws-alice"
        )

        mock_redis.eval.return_value = 0
        assert await connected_slot.vacate_if_owner(alice) is False

    async def test_keepalive(
        self,
        connected_slot: RedisWaitingSlot,
        mock_redis: AsyncMock,
        alice: SessionIdentity,
    ) -> None:
        """Test keepalive refreshes the TTL only for the owner."""
        assert await connected_slot.keepalive(alice) is True
        mock_redis.eval.assert_awaited_once_with(
            KEEPALIVE_IF_OWNER_SCRIPT, 1, "test:slot", "ws-alice", 30
        )

        mock_redis.eval.return_value = 0
        assert await connected_slot.keepalive(alice) is False

    async def test_peek(
        self,
        connected_slot: RedisWaitingSlot,
        mock_redis: AsyncMock,
        alice: SessionIdentity,
    ) -> None:
        assert await connected_slot.peek() is None

        mock_redis.get.return_value = alice.to_json()
        assert await connected_slot.peek() == alice
        mock_redis.getdel.assert_not_awaited()
