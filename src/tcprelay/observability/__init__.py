from tcprelay.observability.health import HealthServer, evaluate_status
from tcprelay.observability.metrics import (
    ACTIVE_CONNECTIONS,
    BYTES_TRANSFERRED,
    CONSECUTIVE_ERRORS,
    MEMORY_RSS_BYTES,
    RESTART_COUNT,
    TOTAL_CONNECTIONS,
    UPSTREAM_ERRORS,
    UPTIME_SECONDS,
    generate_metrics,
    get_content_type,
)
from tcprelay.observability.process import ProcessStats, get_process_stats

__all__ = [
    # Metrics
    "ACTIVE_CONNECTIONS",
    "BYTES_TRANSFERRED",
    "CONSECUTIVE_ERRORS",
    "MEMORY_RSS_BYTES",
    "RESTART_COUNT",
    "TOTAL_CONNECTIONS",
    "UPSTREAM_ERRORS",
    "UPTIME_SECONDS",
    "generate_metrics",
    "get_content_type",
    # Health endpoint
    "HealthServer",
    "evaluate_status",
    # Process
    "ProcessStats",
    "get_process_stats",
]
