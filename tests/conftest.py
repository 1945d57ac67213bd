"""Shared fixtures for tcprelay tests."""

from __future__ import annotations

import asyncio
import os

import pytest
import structlog

from tcprelay.core.config import clear_config

RELAY_ENV_VARS = (
    "TARGET_HOST",
    "TARGET_PORT",
    "LISTEN_HOST",
    "LISTEN_PORT",
    "HEALTH_PORT",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Run every test without relay settings leaking in from the environment."""
    for name in RELAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("RELAY_"):
            monkeypatch.delenv(name, raising=False)
    clear_config()
    yield
    clear_config()
    # The CLI binds structlog to the runner's streams; drop that after each test.
    structlog.reset_defaults()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it returns true or ``timeout`` expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
