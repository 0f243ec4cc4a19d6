"""Health check endpoints for the broker.

Served on a separate aiohttp port so probes and scrapers never share the
client WebSocket listener.
"""

import logging
import time
from typing import Any

from aiohttp import web

from rendezvous.metrics import MetricsCollector, get_metrics_collector

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the broker.

    /health and /readiness report:
    - Waiting slot backend reachability
    - Event relay subscription (shared-slot deployments only)
    - Service uptime
    """

    def __init__(
        self,
        slot: Any,
        lifecycle: Any = None,
        relay: Any = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Create a handler reporting on the given broker components.

        Args:
            slot: WaitingSlot instance
            lifecycle: LifecycleManager instance (optional, for state counts)
            relay: RedisEventRelay instance (optional)
            metrics: Metrics collector (defaults to the global collector)
        """
        self.slot = slot
        self.lifecycle = lifecycle
        self.relay = relay
        self.start_time = time.time()
        self.metrics_collector = metrics or get_metrics_collector()

    def uptime(self) -> float:
        return time.time() - self.start_time

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 when the slot backend answers and the relay is listening, else 503

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "slot_backend": "memory" | "redis",
            "checks": {
                "slot": {"ok": bool, "error": str | null},
                "relay": {"ok": bool, "error": str | null}
            },
            "sessions": {"waiting": int, "paired": int, ...}
        }
        """
        checks: dict[str, Any] = {}

        slot_ok = False
        slot_error = None
        try:
            slot_ok = await self.slot.health_check()
        except Exception as e:
            slot_error = str(e)
            logger.warning("Slot health check failed", extra={"error": str(e)})
        checks["slot"] = {"ok": slot_ok, "error": slot_error}

        relay_ok = True
        relay_error = None
        if self.relay is not None and not self.relay.is_running:
            relay_ok = False
            relay_error = "relay listener not running"
        checks["relay"] = {"ok": relay_ok, "error": relay_error}

        overall_healthy = slot_ok and relay_ok
        response_data: dict[str, Any] = {
            "status": "healthy" if overall_healthy else "unhealthy",
            "uptime_seconds": self.uptime(),
            "slot_backend": self.slot.backend,
            "checks": checks,
        }
        if self.lifecycle is not None:
            response_data["sessions"] = self.lifecycle.snapshot()

        logger.debug(
            "Health check performed",
            extra={"status": response_data["status"], "checks": checks},
        )

        return web.json_response(response_data, status=200 if overall_healthy else 503)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint (same checks as /health)."""
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Answers 200 while the event loop runs, whatever the slot backend says.
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": self.uptime(),
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Text exposition format 0.0.4.
        """
        try:
            return web.Response(
                text=self.metrics_collector.export_prometheus(),
                content_type="text/plain",
                charset="utf-8",
                headers={"X-Prometheus-Format": "0.0.4"},
                status=200,
            )

        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# metrics export failed: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary endpoint."""
        try:
            summary = self.metrics_collector.get_summary()
        except Exception as e:
            logger.error(
                "Failed to generate metrics summary", extra={"error": str(e)}, exc_info=True
            )
            return web.json_response({"status": "error", "error": str(e)}, status=500)

        return web.json_response(
            {"status": "ok", "uptime_seconds": self.uptime(), "metrics": summary}
        )


def setup_health_routes(
    app: web.Application,
    slot: Any,
    lifecycle: Any = None,
    relay: Any = None,
    metrics: MetricsCollector | None = None,
) -> HealthCheckHandler:
    """Register the health and metrics routes on ``app``.

    Args:
        app: aiohttp Application instance
        slot: WaitingSlot instance
        lifecycle: LifecycleManager instance (optional)
        relay: RedisEventRelay instance (optional)
        metrics: Metrics collector (optional)

    Returns:
        The handler serving the routes
    """
    handler = HealthCheckHandler(slot=slot, lifecycle=lifecycle, relay=relay, metrics=metrics)

    routes = {
        "/health": handler.health_check,
        "/readiness": handler.readiness_check,
        "/liveness": handler.liveness_check,
        "/metrics": handler.metrics_endpoint,
        "/metrics/summary": handler.metrics_summary,
    }
    for path, route_handler in routes.items():
        app.router.add_get(path, route_handler)

    logger.info("Health routes registered", extra={"routes": list(routes)})
    return handler
