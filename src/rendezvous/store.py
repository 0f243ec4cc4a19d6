"""Redis-backed waiting slot shared by several broker processes.

The slot is a single Redis key. Every mutation is one atomic server-side
operation so two brokers can never claim the same waiting party:

- occupy: ``SET key value NX EX ttl``
- claim: ``GETDEL key``
- vacate / keepalive: Lua compare-by-connection-handle, then ``DEL`` / ``EXPIRE``

The key TTL is the dead-man's switch: if the owning broker dies without
vacating, the entry expires after ``slot_ttl_seconds``. Owning brokers keep
their waiting entry alive by calling ``keepalive`` periodically.
"""

import logging
from dataclasses import replace
from typing import Any

from redis import asyncio as aioredis
from redis.asyncio import ConnectionPool

from rendezvous.identity import SessionIdentity
from rendezvous.slot import WaitingSlot

logger = logging.getLogger(__name__)

VACATE_IF_OWNER_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    return 0
end
local ok, entry = pcall(cjson.decode, current)
if ok and entry['connection_handle'] == ARGV[1] then
    redis.call('DEL', KEYS[1])
    return 1
end
return 0
"""

KEEPALIVE_IF_OWNER_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    return 0
end
local ok, entry = pcall(cjson.decode, current)
if ok and entry['connection_handle'] == ARGV[1] then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
    return 1
end
return 0
"""


class RedisWaitingSlot(WaitingSlot):
    """Waiting slot stored in Redis.

    Attributes:
        redis_url: Redis connection URL
        db: Redis database number
        key_prefix: Prefix for the slot and entry sequence keys
        slot_ttl_seconds: Expiry of an entry whose broker stopped refreshing it
        connection_pool_size: Redis connection pool size
    """

    def __init__(
        self,
        redis_url: str,
        db: int = 0,
        key_prefix: str = "rendezvous:",
        slot_ttl_seconds: int = 30,
        connection_pool_size: int = 10,
    ) -> None:
        """Initialize slot with Redis connection settings.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379")
            db: Redis database number (0-15)
            key_prefix: Key prefix shared by all brokers of one deployment
            slot_ttl_seconds: Waiting entry TTL (dead-man's switch)
            connection_pool_size: Redis connection pool size
        """
        self.redis_url = redis_url
        self.db = db
        self.key_prefix = key_prefix
        self.slot_ttl_seconds = slot_ttl_seconds
        self.connection_pool_size = connection_pool_size

        # Connection pool (lazy initialization)
        self._pool: Any = None
        self._redis: Any = None
        self._connected = False

    @property
    def backend(self) -> str:
        return "redis"

    @property
    def slot_key(self) -> str:
        return f"{self.key_prefix}slot"

    @property
    def sequence_key(self) -> str:
        return f"{self.key_prefix}entry_seq"

    @property
    def redis(self) -> Any:
        """Underlying client, shared with the event relay."""
        self._require_connection()
        return self._redis

    async def connect(self) -> None:
        """Establish Redis connection pool.

        This method is idempotent - safe to call multiple times.

        Raises:
            ConnectionError: If Redis connection fails
        """
        if self._connected:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                db=self.db,
                max_connections=self.connection_pool_size,
                decode_responses=True,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)

            await self._redis.ping()
            self._connected = True
            logger.info(
                f"Waiting slot connected to Redis at {self.redis_url} (db={self.db}, "
                f"key={self.slot_key})"
            )
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close Redis connection pool gracefully.

        This method is idempotent - safe to call multiple times.
        """
        if not self._connected:
            return

        try:
            if self._redis:
                await self._redis.close()
            if self._pool:
                await self._pool.disconnect()
            self._connected = False
            logger.info("Waiting slot disconnected from Redis")
        except Exception as e:
            logger.warning(f"Error during Redis disconnect: {e}")

    async def health_check(self) -> bool:
        """Check if Redis connection is healthy.

        Returns:
            True if Redis is reachable and responsive, False otherwise
        """
        if not self._connected or not self._redis:
            return False

        try:
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    def _require_connection(self) -> None:
        if not self._connected or not self._redis:
            raise ConnectionError("Redis not connected. Call connect() first.")

    async def try_occupy(self, identity: SessionIdentity) -> bool:
        self._require_connection()

        try:
            entry_id = await self._redis.incr(self.sequence_key)
            entry = replace(identity, entry_id=str(entry_id))
            stored = await self._redis.set(
                self.slot_key, entry.to_json(), nx=True, ex=self.slot_ttl_seconds
            )
        except Exception as e:
            logger.error(f"Failed to occupy waiting slot: {e}")
            raise ConnectionError(f"Waiting slot occupy failed: {e}") from e

        if stored:
            logger.debug(
                f"Slot occupied by '{identity.connection_handle}' "
                f"(entry={entry_id}, ttl={self.slot_ttl_seconds}s)"
            )
        return bool(stored)

    async def try_claim(self) -> SessionIdentity | None:
        self._require_connection()

        try:
            data = await self._redis.getdel(self.slot_key)
        except Exception as e:
            logger.error(f"Failed to claim waiting slot: {e}")
            raise ConnectionError(f"Waiting slot claim failed: {e}") from e

        if not data:
            return None

        try:
            occupant = SessionIdentity.from_json(data)
        except ValueError as e:
            # The entry is gone either way; nobody can be paired with it
            logger.warning(f"Discarded invalid waiting slot entry: {e}")
            return None

        logger.debug(f"Slot claimed: '{occupant.connection_handle}' (entry={occupant.entry_id})")
        return occupant

    async def vacate_if_owner(self, identity: SessionIdentity) -> bool:
        self._require_connection()

        try:
            removed = await self._redis.eval(
                VACATE_IF_OWNER_SCRIPT, 1, self.slot_key, identity.connection_handle
            )
        except Exception as e:
            logger.error(f"Failed to vacate waiting slot: {e}")
            raise ConnectionError(f"Waiting slot vacate failed: {e}") from e

        if removed:
            logger.debug(f"Slot vacated by '{identity.connection_handle}'")
        return bool(removed)

    async def keepalive(self, identity: SessionIdentity) -> bool:
        self._require_connection()

        try:
            refreshed = await self._redis.eval(
                KEEPALIVE_IF_OWNER_SCRIPT,
                1,
                self.slot_key,
                identity.connection_handle,
                self.slot_ttl_seconds,
            )
        except Exception as e:
            logger.error(f"Failed to refresh waiting slot: {e}")
            raise ConnectionError(f"Waiting slot keepalive failed: {e}") from e

        return bool(refreshed)

    async def peek(self) -> SessionIdentity | None:
        self._require_connection()

        try:
            data = await self._redis.get(self.slot_key)
        except Exception as e:
            logger.error(f"Failed to read waiting slot: {e}")
            raise ConnectionError(f"Waiting slot read failed: {e}") from e

        if not data:
            return None

        try:
            return SessionIdentity.from_json(data)
        except ValueError as e:
            logger.warning(f"Invalid waiting slot entry: {e}")
            return None
