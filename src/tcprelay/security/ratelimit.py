"""Per-source-address connection rate tracking.

Keeps, for every address that connected recently, the timestamps of its
connection attempts inside a trailing window. Entries older than the window
are purged lazily by ``sweep()``; addresses left with nothing are dropped, so
memory is bounded by the number of recently active addresses.

Example:
    tracker = RateTracker(window_seconds=60.0)
    tracker.record("192.168.1.1")
    tracker.count("192.168.1.1")  # -> 1
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from time import monotonic
from typing import Any


@dataclass
class RateTracker:
    """Sliding-window connection counter keyed by source address.

    Only touched from the event loop thread, so it carries no lock.
    """

    window_seconds: float = 60.0
    _windows: dict[str, deque[float]] = field(default_factory=dict, init=False)

    def record(self, address: str, now: float | None = None) -> None:
        """Record one connection attempt from ``address``."""
        if now is None:
            now = monotonic()
        window = self._windows.get(address)
        if window is None:
            window = self._windows[address] = deque()
        window.append(now)

    def sweep(self, now: float | None = None) -> int:
        """Purge timestamps older than the window.

        Returns:
            Number of addresses removed because their window became empty.
        """
        if now is None:
            now = monotonic()
        cutoff = now - self.window_seconds
        removed = 0
        for address, window in list(self._windows.items()):
            while window and window[0] < cutoff:
                window.popleft()
            if not window:
                del self._windows[address]
                removed += 1
        return removed

    def count(self, address: str, now: float | None = None) -> int:
        """Connections from ``address`` within the window. Does not purge."""
        window = self._windows.get(address)
        if not window:
            return 0
        if now is None:
            now = monotonic()
        cutoff = now - self.window_seconds
        return sum(1 for ts in window if ts >= cutoff)

    def timestamps(self, address: str) -> list[float]:
        """Recorded timestamps for ``address``, oldest first."""
        return list(self._windows.get(address, ()))

    def __contains__(self, address: object) -> bool:
        return address in self._windows

    @property
    def tracked_addresses(self) -> int:
        """Number of addresses currently tracked."""
        return len(self._windows)

    def get_stats(self) -> dict[str, Any]:
        busiest = max(self._windows.items(), key=lambda item: len(item[1]), default=None)
        return {
            "tracked_addresses": len(self._windows),
            "tracked_timestamps": sum(len(w) for w in self._windows.values()),
            "busiest_address": busiest[0] if busiest else None,
        }
