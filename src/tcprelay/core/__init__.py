"""Core."""

from .config import (
    HealthConfig,
    RelayConfig,
    RestartConfig,
    TimeoutConfig,
    clear_config,
    get_config,
    set_config,
)
from .exceptions import (
    BindError,
    ClientSideError,
    ConfigurationError,
    RelayError,
    RelaySideError,
    UpstreamSideError,
    format_error_for_user,
)

__all__ = [
    "HealthConfig",
    "RelayConfig",
    "RestartConfig",
    "TimeoutConfig",
    "clear_config",
    "get_config",
    "set_config",
    "BindError",
    "ClientSideError",
    "ConfigurationError",
    "RelayError",
    "RelaySideError",
    "UpstreamSideError",
    "format_error_for_user",
]
