"""Error hierarchy for the relay.

Per-connection errors (``RelaySideError`` and subclasses) are contained by the
connection relay. Everything else is process-level and ends up in the restart
scheduler or the CLI.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigurationError(RelayError):
    """Required configuration is missing or invalid."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class BindError(RelayError):
    """The listener could not bind its port."""

    def __init__(self, host: str, port: int, cause: BaseException) -> None:
        super().__init__(f"Failed to bind to {host}:{port}: {cause}")
        self.host = host
        self.port = port
        self.cause = cause


class RelaySideError(RelayError):
    """An I/O error on one side of a relayed connection."""

    side = "unknown"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause) or cause.__class__.__name__)
        self.cause = cause


class ClientSideError(RelaySideError):
    """The client socket failed. Never counted against the upstream."""

    side = "client"


class UpstreamSideError(RelaySideError):
    """The upstream socket failed."""

    side = "upstream"


def format_error_for_user(error: BaseException) -> str:
    """Render an error as a single line for console output."""
    if isinstance(error, ConfigurationError) and error.field:
        return f"Configuration error ({error.field}): {error}"
    if isinstance(error, RelayError):
        return str(error)
    return f"{error.__class__.__name__}: {error}"
