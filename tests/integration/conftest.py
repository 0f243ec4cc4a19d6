"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Redis (an existing server from REDIS_URL, or a Docker container)
- A broker server on free ports with an in-memory waiting slot
"""

import asyncio
import logging
import os
import socket
import subprocess
import time
import uuid
from collections.abc import AsyncIterator, Iterator

import pytest
import redis
import websockets

from rendezvous.config import BrokerConfig
from rendezvous.metrics import MetricsCollector
from rendezvous.server import RendezvousBroker, start_server

logger = logging.getLogger(__name__)


# ============================================================================
# Utility Functions
# ============================================================================


def get_free_port() -> int:
    """Get a free TCP port for binding.

    Returns:
        Available port number
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


def redis_reachable(url: str) -> bool:
    client = redis.Redis.from_url(url, socket_connect_timeout=1)
    try:
        return bool(client.ping())
    except redis.RedisError:
        return False
    finally:
        client.close()


# ============================================================================
# Redis Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def docker_available() -> bool:
    """Check if Docker is available on the system."""
    try:
        result = subprocess.run(  # noqa: S603, S607
            ["docker", "info"],
            capture_output=True,
            check=False,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.SubprocessError, FileNotFoundError):
        return False


@pytest.fixture(scope="session")
def redis_url(docker_available: bool) -> Iterator[str]:
    """Redis URL for integration tests.

    Uses REDIS_URL when that server answers, otherwise starts a throwaway
    redis:7-alpine container. Skips when neither is available.
    """
    env_url = os.getenv("REDIS_URL")
    if env_url and redis_reachable(env_url):
        yield env_url
        return

    if not docker_available:
        pytest.skip("Redis not reachable and Docker not available")

    container_name = f"test-redis-{uuid.uuid4().hex[:8]}"
    redis_port = get_free_port()
    url = f"redis://localhost:{redis_port}"

    logger.info(f"Starting Redis container: {container_name} on port {redis_port}")
    try:
        subprocess.run(  # noqa: S603, S607
            [
                "docker",
                "run",
                "-d",
                "--name",
                container_name,
                "-p",
                f"{redis_port}:6379",
                "redis:7-alpine",
            ],
            check=True,
            capture_output=True,
        )
    except subprocess.CalledProcessError as e:
        pytest.skip(f"Failed to start Redis container: {e}")

    try:
        for _ in range(30):
            if redis_reachable(url):
                break
            time.sleep(0.5)
        else:
            pytest.skip("Redis container did not become ready")

        yield url
    finally:
        logger.info(f"Stopping Redis container: {container_name}")
        subprocess.run(  # noqa: S603, S607
            ["docker", "rm", "-f", container_name],
            capture_output=True,
            check=False,
        )


@pytest.fixture
def key_prefix() -> str:
    """Unique key prefix so tests never share a waiting slot."""
    return f"test-{uuid.uuid4().hex[:8]}:"


# ============================================================================
# Broker Server Fixtures
# ============================================================================


@pytest.fixture
async def broker_url() -> AsyncIterator[str]:
    """Run a single broker with an in-memory slot and yield its WebSocket URL."""
    port = get_free_port()
    config = BrokerConfig.model_validate(
        {
            "websocket": {"host": "127.0.0.1", "port": port},
            "matchmaking": {"broker_id": "broker-e2e"},
            "health": {"port": get_free_port()},
            "log_level": "WARNING",
        }
    )
    broker = RendezvousBroker(config, metrics=MetricsCollector())
    server_task = asyncio.create_task(start_server(None, broker=broker))
    url = f"ws://127.0.0.1:{port}"

    for _ in range(50):
        try:
            async with websockets.connect(url):
                break
        except OSError:
            await asyncio.sleep(0.1)
    else:
        server_task.cancel()
        pytest.fail("Broker server did not start")

    try:
        yield url
    finally:
        server_task.cancel()
        await server_task
