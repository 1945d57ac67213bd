"""Process restart scheduling with exponential backoff.

A restart always means a fresh process image: after the backoff delay a
detached copy of the current command line is spawned with the inherited
environment and standard streams, then this process exits. The restart count
travels to the replacement through ``RELAY_RESTART_COUNT`` so the backoff keeps
growing across process images until a listener binds successfully.
"""

from __future__ import annotations

import asyncio
import os
import random
import subprocess
import sys
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from tcprelay.core.config import RestartConfig

logger = structlog.get_logger()

RESTART_COUNT_ENV = "RELAY_RESTART_COUNT"

Launcher = Callable[[Sequence[str], Mapping[str, str]], Any]


def spawn_detached(argv: Sequence[str], env: Mapping[str, str]) -> subprocess.Popen[bytes]:
    """Launch ``argv`` in its own session, inheriting stdio. Never waited on."""
    return subprocess.Popen(
        list(argv),
        env=dict(env),
        start_new_session=True,
        close_fds=True,
    )


def current_command() -> list[str]:
    """Command line that relaunches this process."""
    return [sys.executable, *sys.argv]


@dataclass(frozen=True)
class RestartState:
    """Read-only view of the restart bookkeeping."""

    restart_count: int
    max_restarts: int
    pending: bool
    last_reason: str | None


class RestartScheduler:
    """Decides whether and when the running process gets replaced."""

    def __init__(
        self,
        config: RestartConfig | None = None,
        *,
        launcher: Launcher = spawn_detached,
        exit_func: Callable[[int], Any] = sys.exit,
        command: Callable[[], Sequence[str]] = current_command,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.config = config or RestartConfig()
        self._launcher = launcher
        self._exit = exit_func
        self._command = command
        self._rng = rng
        self._restart_count = self.config.restart_count
        self._pending = False
        self._timer: asyncio.TimerHandle | None = None
        self._last_reason: str | None = None

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def max_restarts(self) -> int:
        return self.config.max_restarts

    @property
    def pending(self) -> bool:
        """True once a replacement has been scheduled for this process."""
        return self._pending

    def base_delay(self, restart_count: int | None = None) -> float:
        """Backoff delay without jitter, in seconds."""
        if restart_count is None:
            restart_count = self._restart_count
        return min(
            self.config.restart_base_delay * self.config.restart_multiplier**restart_count,
            self.config.restart_max_delay,
        )

    def get_restart_delay(self) -> float:
        """Backoff delay for the current restart count plus uniform jitter, in seconds."""
        return self.base_delay() + self._rng() * self.config.restart_jitter

    def trigger(self, reason: str) -> float | None:
        """Schedule a process replacement.

        Returns:
            The delay in seconds, or None when nothing was scheduled (budget
            exhausted or a replacement already pending).
        """
        if self._restart_count >= self.config.max_restarts:
            logger.critical(
                "Max restarts reached, exiting",
                max_restarts=self.config.max_restarts,
                reason=reason,
            )
            self._exit(1)
            return None

        if self._pending:
            logger.warning("Restart already scheduled, ignoring trigger", reason=reason)
            return None

        self._restart_count += 1
        self._pending = True
        self._last_reason = reason
        delay = self.get_restart_delay()

        logger.error(
            "Restarting process",
            restart=self._restart_count,
            reason=reason,
            delay_ms=round(delay * 1000),
        )

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Fault outside the event loop: nothing else can run, block for the delay.
            time.sleep(delay)
            self._restart()
        else:
            self._timer = loop.call_later(delay, self._restart)
        return delay

    def on_successful_bind(self) -> None:
        """The listener is up; future failures start the backoff from scratch."""
        if self._restart_count:
            logger.info("Listener bound, resetting restart count", previous=self._restart_count)
        self._restart_count = 0

    def cancel(self) -> None:
        """Drop a scheduled replacement (shutdown already in progress)."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = False

    def snapshot(self) -> RestartState:
        return RestartState(
            restart_count=self._restart_count,
            max_restarts=self.config.max_restarts,
            pending=self._pending,
            last_reason=self._last_reason,
        )

    def _restart(self) -> None:
        self._timer = None
        argv = list(self._command())
        env = dict(os.environ)
        env[RESTART_COUNT_ENV] = str(self._restart_count)
        try:
            child = self._launcher(argv, env)
        except OSError as e:
            logger.critical("Failed to launch replacement process", error=str(e), argv=argv)
            self._exit(1)
            return
        logger.info(
            "Replacement process launched, exiting",
            child_pid=getattr(child, "pid", None),
            restart=self._restart_count,
        )
        self._exit(0)
