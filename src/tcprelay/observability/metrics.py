from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

# Names match the metrics scraped from earlier deployments of the relay.

ACTIVE_CONNECTIONS = Gauge(
    "tcp_proxy_active_connections",
    "Number of active connections",
)

# Gauge so the exposed sample keeps its name without a _total suffix.
TOTAL_CONNECTIONS = Gauge(
    "tcp_proxy_total_connections",
    "Total number of connections handled",
)

UPTIME_SECONDS = Gauge(
    "tcp_proxy_uptime_seconds",
    "Uptime in seconds",
)

RESTART_COUNT = Gauge(
    "tcp_proxy_restart_count",
    "Number of restarts",
)

CONSECUTIVE_ERRORS = Gauge(
    "tcp_proxy_consecutive_errors",
    "Number of consecutive errors",
)

# kind: dial/timeout/pipe
UPSTREAM_ERRORS = Counter(
    "tcp_proxy_upstream_errors",
    "Total upstream errors",
    ["kind"],
)

# direction: upstream (client -> target) / downstream (target -> client)
BYTES_TRANSFERRED = Counter(
    "tcp_proxy_bytes",
    "Bytes relayed",
    ["direction"],
)

MEMORY_RSS_BYTES = Gauge(
    "tcp_proxy_memory_rss_bytes",
    "Resident set size of the relay process",
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
