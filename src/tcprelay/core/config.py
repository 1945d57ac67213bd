"""Configuration types with environment variable support.

Connection settings use the plain deployment names (TARGET_HOST, TARGET_PORT,
LISTEN_PORT, HEALTH_PORT). Tuning knobs use the RELAY_ prefix.
Example: RELAY_MAX_RESTARTS=10 lowers the restart budget.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tcprelay.core.exceptions import ConfigurationError


class TimeoutConfig(BaseSettings):
    """Timeout configuration.

    All timeouts are in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    dial_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Upstream connect timeout (seconds).",
    )
    keepalive_idle: int = Field(
        default=60,
        ge=1,
        description="TCP keep-alive idle time on both sockets (seconds).",
    )
    shutdown_grace: float = Field(
        default=30.0,
        ge=0,
        description="How long active connections may drain on shutdown (seconds).",
    )
    misconfig_retry_delay: float = Field(
        default=5.0,
        ge=0,
        description="Delay before restarting on missing configuration (seconds).",
    )


class RestartConfig(BaseSettings):
    """Process restart policy."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_restarts: int = Field(
        default=50,
        ge=0,
        description="Restarts allowed without a successful bind before giving up.",
    )
    restart_base_delay: float = Field(
        default=1.0,
        ge=0,
        description="Base restart delay (seconds).",
    )
    restart_multiplier: float = Field(
        default=1.5,
        ge=1.0,
        description="Exponential backoff multiplier.",
    )
    restart_max_delay: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound of the backoff before jitter (seconds).",
    )
    restart_jitter: float = Field(
        default=1.0,
        ge=0,
        description="Maximum uniform random jitter added to each delay (seconds).",
    )
    restart_count: int = Field(
        default=0,
        ge=0,
        description="Restarts so far. Set by the parent process on replacement.",
    )
    retry_on_misconfig: bool = Field(
        default=False,
        description="Restart with backoff instead of exiting when TARGET_HOST is missing.",
    )


class HealthConfig(BaseSettings):
    """Health monitoring thresholds."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    health_check_interval: float = Field(
        default=60.0,
        gt=0,
        description="Interval of the restart decision loop (seconds).",
    )
    stats_interval: float = Field(
        default=30.0,
        gt=0,
        description="Interval of the statistics log line (seconds).",
    )
    idle_restart_after: float = Field(
        default=900.0,
        gt=0,
        description="Restart when idle this long with no active connections (seconds).",
    )
    memory_limit_mb: int = Field(
        default=1536,
        gt=0,
        description="Restart when resident memory exceeds this many MB.",
    )
    unhealthy_after: float = Field(
        default=300.0,
        gt=0,
        description="/health reports unhealthy after this long without a new connection (seconds).",
    )
    error_threshold: int = Field(
        default=10,
        ge=1,
        description="Consecutive upstream errors that trigger a restart.",
    )
    rate_window: float = Field(
        default=60.0,
        gt=0,
        description="Per-address connection rate window (seconds).",
    )
    rate_sweep_interval: float = Field(
        default=300.0,
        gt=0,
        description="Interval of the rate window sweep (seconds).",
    )


class RelayConfig(BaseSettings):
    """Master configuration.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.target_host, config.target_port)
        print(config.restart.max_restarts)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    target_host: str | None = Field(
        default=None,
        description="Upstream host to forward connections to. Required.",
    )
    target_port: int = Field(
        default=5432,
        description="Upstream port.",
    )
    listen_host: str = Field(
        default="0.0.0.0",
        description="Address the relay listens on.",
    )
    listen_port: int = Field(
        default=5432,
        description="Port the relay listens on.",
    )
    health_port: int = Field(
        default=5454,
        description="Port of the /ping, /health and /metrics endpoint.",
    )
    log_level: str = Field(
        default="info",
        description="Log level (debug, info, warning, error).",
    )
    log_format: str = Field(
        default="console",
        description="Log renderer: 'console' or 'json'.",
    )

    @property
    def timeouts(self) -> TimeoutConfig:
        """Get timeout configuration."""
        return TimeoutConfig()

    @property
    def restart(self) -> RestartConfig:
        """Get restart policy configuration."""
        return RestartConfig()

    @property
    def health(self) -> HealthConfig:
        """Get health monitoring configuration."""
        return HealthConfig()

    def validate_runtime(self) -> None:
        """Check the settings needed to actually relay traffic.

        Raises:
            ConfigurationError: If TARGET_HOST is missing or a port is out of range.
        """
        if not self.target_host:
            raise ConfigurationError(
                "TARGET_HOST environment variable is required", field="target_host"
            )
        for name in ("target_port", "listen_port", "health_port"):
            port = getattr(self, name)
            if not 1 <= port <= 65535:
                raise ConfigurationError(
                    f"{name.upper()} must be between 1 and 65535, got {port}", field=name
                )
        if self.log_format not in ("console", "json"):
            raise ConfigurationError(
                f"LOG_FORMAT must be 'console' or 'json', got {self.log_format!r}",
                field="log_format",
            )

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "relay": {
                "target_host": self.target_host,
                "target_port": self.target_port,
                "listen_host": self.listen_host,
                "listen_port": self.listen_port,
                "health_port": self.health_port,
                "log_level": self.log_level,
                "log_format": self.log_format,
            },
            "timeouts": self.timeouts.model_dump(),
            "restart": self.restart.model_dump(),
            "health": self.health.model_dump(),
        }


_config: RelayConfig | None = None


def get_config() -> RelayConfig:
    """Get the global configuration instance.

    Returns a cached instance of RelayConfig that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = RelayConfig()
    return _config


def set_config(config: RelayConfig) -> None:
    """Replace the cached configuration (used by the CLI after applying options)."""
    global _config
    _config = config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None
