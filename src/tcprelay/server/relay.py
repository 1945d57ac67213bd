"""Relay server: accepts inbound connections and owns the aggregate counters."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from tcprelay.core.config import HealthConfig, TimeoutConfig
from tcprelay.core.exceptions import BindError
from tcprelay.observability.metrics import (
    ACTIVE_CONNECTIONS,
    CONSECUTIVE_ERRORS,
    TOTAL_CONNECTIONS,
    UPSTREAM_ERRORS,
)
from tcprelay.security.ratelimit import RateTracker
from tcprelay.server.connection import Connection, ConnectionRelay

logger = structlog.get_logger()


class RestartTrigger(Protocol):
    def trigger(self, reason: str) -> Any: ...

    def on_successful_bind(self) -> None: ...


@dataclass(frozen=True)
class AggregateSnapshot:
    """Read-only copy of the server counters."""

    active_connections: int
    total_connections: int
    consecutive_errors: int
    last_activity: float
    taken_at: float

    @property
    def time_since_activity(self) -> float:
        """Seconds since the last accepted connection."""
        return max(0.0, self.taken_at - self.last_activity)


class RelayServer:
    """Accepts client connections and hands each one to a ConnectionRelay.

    Counters are plain integers mutated only from the event loop thread:
    accept increments, ``release()`` decrements, dial results update the
    consecutive error count.
    """

    def __init__(
        self,
        target_host: str,
        target_port: int,
        scheduler: RestartTrigger,
        *,
        listen_host: str = "0.0.0.0",
        rate_tracker: RateTracker | None = None,
        timeouts: TimeoutConfig | None = None,
        health: HealthConfig | None = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target_host = target_host
        self.target_port = target_port
        self.listen_host = listen_host
        self.scheduler = scheduler
        self.timeouts = timeouts or TimeoutConfig()
        self.health = health or HealthConfig()
        self.rate_tracker = rate_tracker or RateTracker(window_seconds=self.health.rate_window)
        self._time = time_source

        self.active_connections = 0
        self.total_connections = 0
        self.consecutive_errors = 0
        self.last_activity = self._time()

        self._server: asyncio.Server | None = None
        self._relays: dict[int, ConnectionRelay] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self.listen_port: int | None = None

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def error_threshold(self) -> int:
        return self.health.error_threshold

    async def start(self, listen_port: int) -> None:
        """Bind the listener.

        Raises:
            BindError: The port could not be bound. A restart has already been
                requested from the scheduler; the caller should not retry.
        """
        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                self.listen_host,
                listen_port,
                reuse_address=True,
            )
        except OSError as e:
            logger.error("Failed to start server", host=self.listen_host, port=listen_port, error=str(e))
            self.scheduler.trigger(f"Failed to bind to port {listen_port}: {e}")
            raise BindError(self.listen_host, listen_port, e) from e

        sockets = self._server.sockets or ()
        self.listen_port = sockets[0].getsockname()[1] if sockets else listen_port
        logger.info(
            "TCP relay listening",
            host=self.listen_host,
            port=self.listen_port,
            target=f"{self.target_host}:{self.target_port}",
        )
        self.scheduler.on_successful_bind()

    def stop(self) -> None:
        """Stop accepting new connections. Existing ones keep running."""
        if self._server is not None:
            self._server.close()
            logger.info("Server stopped accepting new connections", active=self.active_connections)

    async def drain(self, grace: float | None = None) -> bool:
        """Wait for active connections to finish, then force-close the rest.

        Returns:
            True if every connection closed on its own within ``grace``.
        """
        if grace is None:
            grace = self.timeouts.shutdown_grace
        if self.active_connections:
            logger.info("Waiting for active connections to close", active=self.active_connections)
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=grace)
            logger.info("All connections closed")
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "Force shutdown after grace period",
                grace=grace,
                remaining=self.active_connections,
            )
            await self.close_all()
            return False

    async def close_all(self) -> None:
        """Cancel every live relay; each one tears itself down."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername") or ("unknown", 0)
        relay = self.accept(reader, writer, peer[0], peer[1])
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            await relay.run()
        finally:
            if task is not None:
                self._tasks.discard(task)

    def accept(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        client_address: str,
        client_port: int,
    ) -> ConnectionRelay:
        """Account for a new client connection and build its relay."""
        now = self._time()
        self.total_connections += 1
        self.active_connections += 1
        self.last_activity = now
        self._idle.clear()
        self.rate_tracker.record(client_address, now)
        TOTAL_CONNECTIONS.set(self.total_connections)
        ACTIVE_CONNECTIONS.set(self.active_connections)

        connection = Connection(
            id=self.total_connections,
            client_address=client_address,
            client_port=client_port,
        )
        relay = ConnectionRelay(
            self,
            connection,
            reader,
            writer,
            self.target_host,
            self.target_port,
            dial_timeout=self.timeouts.dial_timeout,
            keepalive_idle=self.timeouts.keepalive_idle,
        )
        self._relays[connection.id] = relay
        logger.info(
            "New connection",
            connection_id=connection.id,
            client=connection.client_info,
            target=f"{self.target_host}:{self.target_port}",
            active=self.active_connections,
        )
        return relay

    def release(self, relay: ConnectionRelay) -> None:
        """Give back the active slot of a torn-down relay. Called once per relay."""
        if self._relays.pop(relay.id, None) is None:
            return
        self.active_connections = max(0, self.active_connections - 1)
        ACTIVE_CONNECTIONS.set(self.active_connections)
        if self.active_connections == 0:
            self._idle.set()
        logger.info(
            "Connection cleaned up",
            connection_id=relay.id,
            bytes_in=relay.connection.bytes_in,
            bytes_out=relay.connection.bytes_out,
            active=self.active_connections,
        )

    def record_upstream_success(self) -> None:
        self.consecutive_errors = 0
        CONSECUTIVE_ERRORS.set(0)

    def record_upstream_error(self, message: str, kind: str = "pipe") -> None:
        """Count an upstream failure and escalate once the threshold is hit."""
        self.consecutive_errors += 1
        CONSECUTIVE_ERRORS.set(self.consecutive_errors)
        UPSTREAM_ERRORS.labels(kind=kind).inc()
        if self.consecutive_errors >= self.error_threshold:
            self.scheduler.trigger(f"Too many consecutive upstream errors: {message}")

    def snapshot(self) -> AggregateSnapshot:
        return AggregateSnapshot(
            active_connections=self.active_connections,
            total_connections=self.total_connections,
            consecutive_errors=self.consecutive_errors,
            last_activity=self.last_activity,
            taken_at=self._time(),
        )

    def get_relay(self, connection_id: int) -> ConnectionRelay | None:
        return self._relays.get(connection_id)

    async def wait_closed(self) -> None:
        if self._server is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
