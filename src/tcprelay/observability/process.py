"""Resource usage of the current process."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass

import psutil

_STARTED_AT = time.monotonic()
_process: psutil.Process | None = None


@dataclass(frozen=True)
class ProcessStats:
    """Point-in-time process metrics from psutil."""

    pid: int
    rss: int
    vms: int
    uptime: float

    @property
    def rss_mb(self) -> int:
        return round(self.rss / 1024 / 1024)


def _get_process() -> psutil.Process:
    global _process
    if _process is None or _process.pid != os.getpid():
        _process = psutil.Process(os.getpid())
    return _process


def get_process_stats() -> ProcessStats:
    """Sample memory and uptime of this process."""
    info = _get_process().memory_info()
    return ProcessStats(
        pid=os.getpid(),
        rss=info.rss,
        vms=info.vms,
        uptime=time.monotonic() - _STARTED_AT,
    )
