"""Process-wide wiring of the relay, its monitor and the restart policy."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
import threading
from types import TracebackType
from typing import Any

import structlog

from tcprelay.core.config import RelayConfig
from tcprelay.core.exceptions import BindError, ConfigurationError
from tcprelay.observability.health import HealthServer
from tcprelay.security.ratelimit import RateTracker
from tcprelay.server.relay import RelayServer
from tcprelay.supervisor.monitor import HealthMonitor
from tcprelay.supervisor.restart import RestartScheduler

logger = structlog.get_logger()


class SupervisorRoot:
    """Entry point that owns every long-lived component of the process.

    All fault paths (uncaught exceptions, unhandled task errors, upstream
    error bursts, bind failures, the health monitor) end in the single
    ``RestartScheduler`` instance created here.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        scheduler: RestartScheduler | None = None,
    ) -> None:
        if not config.target_host:
            raise ConfigurationError("TARGET_HOST environment variable is required", field="target_host")
        self.config = config
        timeouts = config.timeouts
        health = config.health

        self.scheduler = scheduler or RestartScheduler(config.restart)
        self.rate_tracker = RateTracker(window_seconds=health.rate_window)
        self.server = RelayServer(
            config.target_host,
            config.target_port,
            self.scheduler,
            listen_host=config.listen_host,
            rate_tracker=self.rate_tracker,
            timeouts=timeouts,
            health=health,
        )
        self.monitor = HealthMonitor(self.server, self.scheduler, health, rate_tracker=self.rate_tracker)
        self.health_server = HealthServer(
            self.server,
            self.scheduler,
            port=config.health_port,
            unhealthy_after=health.unhealthy_after,
        )
        self._shutdown_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._shutdown_requested = False
        self._previous_excepthook = sys.excepthook
        self._previous_threading_excepthook = threading.excepthook

    async def run(self) -> int:
        """Serve until a shutdown signal arrives. Returns the process exit status."""
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._shutdown_event = asyncio.Event()
        self.install_fault_handlers(loop)
        self._install_signal_handlers(loop)

        logger.info(
            "Starting TCP relay with auto-restart",
            listen=f"{self.config.listen_host}:{self.config.listen_port}",
            target=f"{self.config.target_host}:{self.config.target_port}",
            restart_count=self.scheduler.restart_count,
        )

        await self.health_server.start()
        try:
            await self.server.start(self.config.listen_port)
        except BindError:
            # Replacement already scheduled; keep /health up until it fires.
            await self._shutdown_event.wait()
            return await self.shutdown()

        await self.monitor.start()
        await self._shutdown_event.wait()
        return await self.shutdown()

    def request_shutdown(self) -> None:
        """Begin graceful shutdown. Safe to call more than once."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        logger.info("Shutting down gracefully...")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def shutdown(self) -> int:
        self.scheduler.cancel()
        self.server.stop()
        clean = await self.server.drain(self.config.timeouts.shutdown_grace)
        await self.monitor.stop()
        await self.health_server.stop()
        await self.server.wait_closed()
        logger.info("Shutdown complete", forced=not clean)
        return 0

    def install_fault_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route uncaught exceptions and unhandled task errors into the scheduler."""
        loop.set_exception_handler(self._handle_loop_exception)
        sys.excepthook = self._excepthook
        threading.excepthook = self._threading_excepthook

    def uninstall_fault_handlers(self) -> None:
        sys.excepthook = self._previous_excepthook
        threading.excepthook = self._previous_threading_excepthook
        if self._loop is not None and not self._loop.is_closed():
            self._loop.set_exception_handler(None)

    def escalate(self, reason: str) -> None:
        """Request a restart from any thread."""
        loop = self._loop
        if (
            loop is not None
            and loop.is_running()
            and threading.current_thread() is not threading.main_thread()
        ):
            loop.call_soon_threadsafe(self.scheduler.trigger, reason)
        else:
            self.scheduler.trigger(reason)

    def _handle_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        exc = context.get("exception")
        message = str(exc) if exc is not None else context.get("message", "unknown error")
        logger.error(
            "Unhandled rejection",
            error=message,
            context=context.get("message"),
            exc_info=exc if isinstance(exc, BaseException) else None,
        )
        self.scheduler.trigger(f"Unhandled rejection: {message}")

    def _excepthook(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            self._previous_excepthook(exc_type, exc, tb)
            return
        logger.critical("Uncaught exception", error=str(exc), exc_info=(exc_type, exc, tb))
        self.escalate(f"Uncaught exception: {exc}")

    def _threading_excepthook(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit:
            return
        logger.critical(
            "Uncaught exception in thread",
            thread=args.thread.name if args.thread else None,
            error=str(args.exc_value),
        )
        self.escalate(f"Uncaught exception: {args.exc_value}")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                with contextlib.suppress(ValueError):
                    signal.signal(
                        sig, lambda *_: loop.call_soon_threadsafe(self.request_shutdown)
                    )
