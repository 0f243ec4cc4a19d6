"""Rendezvous broker server.

Main server implementation that:
1. Starts the WebSocket transport
2. Connects the waiting slot (in-memory, or Redis shared with other brokers)
3. Starts the cross-broker relay and slot keepalive for the Redis backend
4. Provides HTTP health check and metrics endpoints
5. Accepts client connections and feeds their messages to the lifecycle manager
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from rendezvous.config import BrokerConfig
from rendezvous.errors import ContentionExceeded, PartnerUnreachable, RendezvousError
from rendezvous.health import setup_health_routes
from rendezvous.identity import IdentityRegistry
from rendezvous.lifecycle import LifecycleManager, Notification, Notifier
from rendezvous.matchmaker import Matchmaker
from rendezvous.metrics import MetricsCollector, get_metrics_collector
from rendezvous.relay import RedisEventRelay
from rendezvous.slot import InMemoryWaitingSlot, WaitingSlot
from rendezvous.store import RedisWaitingSlot
from rendezvous.transport.base import ClientConnection
from rendezvous.transport.websocket_protocol import (
    CancelSearchMessage,
    ClientMessage,
    EndSessionMessage,
    ErrorMessage,
    FindPartnerMessage,
    PeerStateMessage,
)
from rendezvous.transport.websocket_transport import WebSocketTransport
from rendezvous.utils.logging import log_event, setup_logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("configs") / "rendezvous.yaml"


def build_slot(config: BrokerConfig) -> WaitingSlot:
    """Create the waiting slot selected by ``matchmaking.slot_backend``."""
    if config.matchmaking.slot_backend == "redis":
        return RedisWaitingSlot(
            redis_url=config.redis.url,
            db=config.redis.db,
            key_prefix=config.redis.key_prefix,
            slot_ttl_seconds=config.matchmaking.slot_ttl_seconds,
            connection_pool_size=config.redis.connection_pool_size,
        )
    return InMemoryWaitingSlot()


class RendezvousBroker(Notifier):
    """Routes client connections and notifications through the lifecycle manager.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: BrokerConfig,
        slot: WaitingSlot | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize broker.

        Args:
            config: Broker configuration
            slot: Waiting slot override (defaults to the configured backend)
            metrics: Metrics collector (defaults to the global collector)
        """
        self.config = config
        self.broker_id = config.matchmaking.broker_id
        self.metrics = metrics or get_metrics_collector()

        self.slot = slot or build_slot(config)
        self.identities = IdentityRegistry(broker_id=self.broker_id)
        self.matchmaker = Matchmaker(self.slot, max_attempts=config.matchmaking.max_attempts)
        self.lifecycle = LifecycleManager(
            self.matchmaker, self.identities, notifier=self, metrics=self.metrics
        )
        self.relay: RedisEventRelay | None = None

        self._connections: dict[str, ClientConnection] = {}
        self._keepalive_task: asyncio.Task[None] | None = None

        logger.info(
            f"Broker initialized: id={self.broker_id} slot_backend={self.slot.backend}"
        )

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def initialize(self) -> None:
        """Connect the shared slot and start the relay and keepalive loop.

        No-op for the in-memory slot.

        Raises:
            ConnectionError: If Redis is unreachable
        """
        if not isinstance(self.slot, RedisWaitingSlot):
            return

        await self.slot.connect()
        self.relay = RedisEventRelay(
            self.slot.redis, self.broker_id, channel_prefix=self.config.redis.key_prefix
        )
        await self.relay.start(self.lifecycle.apply_remote)
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def shutdown(self) -> None:
        """Close client connections and release backend resources."""
        logger.info("Shutting down broker...")

        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            try:
                await self._keepalive_task
            except asyncio.CancelledError:
                pass
            self._keepalive_task = None

        for connection in list(self._connections.values()):
            await connection.close()

        if self.relay is not None:
            await self.relay.stop()
            self.relay = None

        if isinstance(self.slot, RedisWaitingSlot):
            await self.slot.disconnect()

        logger.info("Broker shutdown complete")

    async def deliver(self, notification: Notification) -> None:
        """Send to a local connection, or relay to the broker owning the target.

        Raises:
            ConnectionError: If the target is gone or no relay is available
        """
        target = notification.target
        if self.lifecycle.is_local(target):
            connection = self._connections.get(target.connection_handle)
            if connection is None:
                raise ConnectionError(f"Connection {target.connection_handle} is gone")
            await connection.send_message(notification.message)
            return

        if self.relay is None:
            raise ConnectionError(
                f"No relay for remote broker '{target.broker_id}' "
                f"(connection {target.connection_handle})"
            )
        await self.relay.publish(notification)

    async def handle_connection(self, connection: ClientConnection) -> None:
        """Serve one client until it disconnects, then clean up its state."""
        handle = connection.connection_id
        self._connections[handle] = connection
        self.metrics.record_connection_opened()

        try:
            async for message in connection.receive_messages():
                await self.handle_message(connection, message)
        except ConnectionError as e:
            logger.info("Client connection lost", extra={"connection_id": handle, "error": str(e)})
        finally:
            self._connections.pop(handle, None)
            self.metrics.record_connection_closed()
            await self.lifecycle.on_disconnect(handle)

    async def handle_message(self, connection: ClientConnection, message: ClientMessage) -> None:
        """Dispatch one client message to the lifecycle manager."""
        handle = connection.connection_id

        try:
            if isinstance(message, FindPartnerMessage):
                await self.lifecycle.find_partner(handle, message.peer_address)
            elif isinstance(message, CancelSearchMessage):
                await self.lifecycle.cancel_search(handle)
            elif isinstance(message, EndSessionMessage):
                await self.lifecycle.end_session(handle)
            elif isinstance(message, PeerStateMessage):
                await self.lifecycle.on_peer_state(handle, message.state)

        except (ContentionExceeded, PartnerUnreachable) as e:
            logger.warning(
                "Request failed", extra={"connection_id": handle, "code": e.code, "error": str(e)}
            )
            await self._send_error(connection, str(e), e.code)
        except RendezvousError as e:
            # Invalid for the current state; state is unchanged
            logger.info(
                "Ignored request",
                extra={"connection_id": handle, "type": message.type, "error": str(e)},
            )
        except ConnectionError as e:
            logger.error(
                "Slot backend unavailable",
                extra={"connection_id": handle, "type": message.type, "error": str(e)},
            )
            await self._send_error(connection, "Matchmaking temporarily unavailable")

    async def _send_error(
        self, connection: ClientConnection, error_msg: str, code: str = "INTERNAL_ERROR"
    ) -> None:
        try:
            await connection.send_message(ErrorMessage(message=error_msg, code=code))
        except ConnectionError:
            pass

    async def _keepalive_loop(self) -> None:
        interval = self.config.matchmaking.keepalive_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.lifecycle.keepalive_waiting()
            except ConnectionError as e:
                logger.error(f"Waiting slot keepalive failed: {e}")


async def start_server(config_path: Path | None, broker: RendezvousBroker | None = None) -> None:
    """Start the broker and serve until cancelled.

    Args:
        config_path: Path to broker config YAML (defaults apply if missing)
        broker: Pre-built broker (testing)
    """
    if broker is not None:
        config = broker.config
    else:
        config = BrokerConfig.from_yaml_with_defaults(config_path)
    setup_logging(config.log_level)

    if broker is None:
        broker = RendezvousBroker(config)

    await broker.initialize()

    ws_config = config.websocket
    transport = WebSocketTransport(
        host=ws_config.host,
        port=ws_config.port,
        max_connections=ws_config.max_connections,
    )
    await transport.start()

    runner: AppRunner | None = None
    if config.health.enabled:
        health_app = Application()
        setup_health_routes(
            health_app, broker.slot, lifecycle=broker.lifecycle, relay=broker.relay,
            metrics=broker.metrics,
        )
        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, config.health.host, config.health_port)
        await site.start()
        logger.info("Health check server started", extra={"port": config.health_port})

    log_event(
        "broker_started",
        {
            "broker_id": broker.broker_id,
            "slot_backend": broker.slot.backend,
            "port": ws_config.port,
        },
    )

    connection_tasks: set[asyncio.Task[None]] = set()
    try:
        while True:
            connection = await transport.accept_connection()
            task = asyncio.create_task(broker.handle_connection(connection))
            connection_tasks.add(task)
            task.add_done_callback(connection_tasks.discard)

    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        logger.info("Shutting down rendezvous broker")

        await transport.stop()

        if runner is not None:
            await runner.cleanup()

        await broker.shutdown()

        if connection_tasks:
            logger.info("Waiting for connections to close", extra={"count": len(connection_tasks)})
            await asyncio.wait(connection_tasks, timeout=config.graceful_shutdown_timeout_s)

        logger.info("Rendezvous broker stopped")


def main() -> None:
    """Entry point for the rendezvous broker."""
    parser = argparse.ArgumentParser(description="Rendezvous matchmaking broker")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to broker config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Rendezvous broker interrupted")


if __name__ == "__main__":
    main()
