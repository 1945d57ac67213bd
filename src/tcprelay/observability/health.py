"""HTTP liveness, health and metrics endpoint.

Runs on its own port next to the relay listener. Failures here are logged
and never trigger a restart.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from aiohttp import web

from tcprelay.observability.metrics import (
    ACTIVE_CONNECTIONS,
    CONSECUTIVE_ERRORS,
    MEMORY_RSS_BYTES,
    RESTART_COUNT,
    TOTAL_CONNECTIONS,
    UPTIME_SECONDS,
    generate_metrics,
    get_content_type,
)
from tcprelay.observability.process import get_process_stats

if TYPE_CHECKING:
    from tcprelay.server.relay import RelayServer
    from tcprelay.supervisor.restart import RestartScheduler

logger = structlog.get_logger()

DEFAULT_UNHEALTHY_AFTER = 300.0


def evaluate_status(time_since_activity: float, unhealthy_after: float = DEFAULT_UNHEALTHY_AFTER) -> str:
    """Healthy while the last accepted connection is less than ``unhealthy_after`` seconds old."""
    return "healthy" if time_since_activity < unhealthy_after else "unhealthy"


class HealthServer:
    """Serves /ping, /health and /metrics from the server and scheduler snapshots."""

    def __init__(
        self,
        server: RelayServer,
        scheduler: RestartScheduler,
        *,
        host: str = "0.0.0.0",
        port: int = 5454,
        unhealthy_after: float = DEFAULT_UNHEALTHY_AFTER,
    ) -> None:
        self.server = server
        self.scheduler = scheduler
        self.host = host
        self.port = port
        self.unhealthy_after = unhealthy_after
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ping", self._handle_ping)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/metrics", self._handle_metrics)
        return app

    async def start(self) -> bool:
        """Start serving. Returns False (and logs) if the port cannot be bound."""
        self._runner = web.AppRunner(self.create_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            logger.error("Health server error (non-critical)", port=self.port, error=str(e))
            await self._runner.cleanup()
            self._runner = None
            return False
        logger.info("Health check server listening", port=self.port, endpoints="/ping, /health, /metrics")
        return True

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    def health_payload(self) -> dict[str, Any]:
        snapshot = self.server.snapshot()
        restart = self.scheduler.snapshot()
        stats = get_process_stats()
        time_since_activity = snapshot.time_since_activity
        return {
            "status": evaluate_status(time_since_activity, self.unhealthy_after),
            "activeConnections": snapshot.active_connections,
            "totalConnections": snapshot.total_connections,
            "uptime": stats.uptime,
            "memoryUsage": {"rss": stats.rss, "vms": stats.vms},
            "pid": stats.pid,
            "restartCount": restart.restart_count,
            "consecutiveErrors": snapshot.consecutive_errors,
            "timeSinceActivity": round(time_since_activity * 1000),
        }

    async def _handle_ping(self, request: web.Request) -> web.Response:
        return web.Response(text="pong")

    async def _handle_health(self, request: web.Request) -> web.Response:
        payload = self.health_payload()
        status = 200 if payload["status"] == "healthy" else 503
        return web.json_response(payload, status=status)

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        snapshot = self.server.snapshot()
        stats = get_process_stats()
        ACTIVE_CONNECTIONS.set(snapshot.active_connections)
        TOTAL_CONNECTIONS.set(snapshot.total_connections)
        CONSECUTIVE_ERRORS.set(snapshot.consecutive_errors)
        RESTART_COUNT.set(self.scheduler.restart_count)
        UPTIME_SECONDS.set(stats.uptime)
        MEMORY_RSS_BYTES.set(stats.rss)

        # aiohttp rejects a content_type carrying a charset, so set the header directly
        return web.Response(
            body=generate_metrics(),
            headers={"Content-Type": get_content_type()},
        )
