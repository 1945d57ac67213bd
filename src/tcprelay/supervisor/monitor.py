"""Periodic health evaluation of the relay process."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable

import structlog

from tcprelay.core.config import HealthConfig
from tcprelay.observability.process import ProcessStats, get_process_stats
from tcprelay.security.ratelimit import RateTracker
from tcprelay.server.relay import RelayServer
from tcprelay.supervisor.restart import RestartScheduler

logger = structlog.get_logger()


class HealthMonitor:
    """Watches for conditions no single connection can see.

    Three loops run on the event loop:

    - every ``health_check_interval`` (60s) ``evaluate()`` decides whether the
      process should be replaced: idle for ``idle_restart_after`` (15 min)
      with no active connection, or RSS above ``memory_limit_mb`` (1536 MB);
    - every ``stats_interval`` (30s) a statistics line is logged;
    - every ``rate_sweep_interval`` (5 min) the rate tracker is swept.

    The monitor only reads the server counters, it never writes them.
    """

    def __init__(
        self,
        server: RelayServer,
        scheduler: RestartScheduler,
        config: HealthConfig | None = None,
        *,
        rate_tracker: RateTracker | None = None,
        process_stats: Callable[[], ProcessStats] = get_process_stats,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self.server = server
        self.scheduler = scheduler
        self.config = config or HealthConfig()
        self.rate_tracker = rate_tracker or server.rate_tracker
        self._process_stats = process_stats
        self._time = time_source
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop(self.config.health_check_interval, self._health_tick, "health check")
            ),
            asyncio.create_task(self._loop(self.config.stats_interval, self._stats_tick, "stats")),
            asyncio.create_task(
                self._loop(self.config.rate_sweep_interval, self._sweep_tick, "rate sweep")
            ),
        ]
        logger.info(
            "Health monitor started",
            check_interval=self.config.health_check_interval,
            stats_interval=self.config.stats_interval,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []

    async def _loop(
        self, interval: float, tick: Callable[[], Awaitable[None]], name: str
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except Exception as e:
                logger.error("Monitor loop error", loop=name, error=str(e))

    def evaluate(self) -> str | None:
        """Check the restart conditions.

        Returns:
            The restart reason, or None when the process looks healthy.
        """
        snapshot = self.server.snapshot()
        stats = self._process_stats()

        if (
            snapshot.time_since_activity > self.config.idle_restart_after
            and snapshot.active_connections == 0
        ):
            minutes = round(self.config.idle_restart_after / 60)
            return f"Health check: No activity for {minutes} minutes"

        if stats.rss_mb > self.config.memory_limit_mb:
            return f"High memory usage: {stats.rss_mb}MB"

        return None

    async def _health_tick(self) -> None:
        reason = self.evaluate()
        if reason is not None:
            self.scheduler.trigger(reason)
            return

        snapshot = self.server.snapshot()
        logger.info(
            "Health",
            active=snapshot.active_connections,
            total=snapshot.total_connections,
            memory_mb=self._process_stats().rss_mb,
            errors=snapshot.consecutive_errors,
            restarts=self.scheduler.restart_count,
        )

    async def _stats_tick(self) -> None:
        snapshot = self.server.snapshot()
        logger.info(
            "Stats",
            active=snapshot.active_connections,
            total=snapshot.total_connections,
            rss_mb=self._process_stats().rss_mb,
        )

    async def _sweep_tick(self) -> None:
        removed = self.rate_tracker.sweep(self._time())
        logger.debug(
            "Rate windows swept",
            removed=removed,
            tracked=self.rate_tracker.tracked_addresses,
        )
