from tcprelay.server.connection import Connection, ConnectionRelay, ConnectionState
from tcprelay.server.relay import AggregateSnapshot, RelayServer

__all__ = [
    "AggregateSnapshot",
    "Connection",
    "ConnectionRelay",
    "ConnectionState",
    "RelayServer",
]
