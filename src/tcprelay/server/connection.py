"""One client to upstream pairing, from dial to teardown."""

from __future__ import annotations

import asyncio
import socket
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from tcprelay.core.exceptions import ClientSideError, RelaySideError, UpstreamSideError
from tcprelay.observability.metrics import BYTES_TRANSFERRED

if TYPE_CHECKING:
    from tcprelay.server.relay import RelayServer

logger = structlog.get_logger()

READ_CHUNK_SIZE = 64 * 1024


class ConnectionState(Enum):
    DIALING = "dialing"
    PIPING = "piping"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Connection:
    """Accepted client connection."""

    id: int
    client_address: str
    client_port: int
    state: ConnectionState = ConnectionState.DIALING
    opened_at: float = field(default_factory=time.monotonic)
    bytes_in: int = 0  # client -> upstream
    bytes_out: int = 0  # upstream -> client

    @property
    def client_info(self) -> str:
        return f"{self.client_address}:{self.client_port}"


def tune_socket(writer: asyncio.StreamWriter, keepalive_idle: int) -> None:
    """Enable keep-alive and disable Nagle on the socket behind ``writer``."""
    sock = writer.get_extra_info("socket")
    if sock is None:
        return
    options = [
        (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1),
        (socket.IPPROTO_TCP, socket.TCP_NODELAY, 1),
    ]
    if hasattr(socket, "TCP_KEEPIDLE"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, keepalive_idle))
    for level, option, value in options:
        try:
            sock.setsockopt(level, option, value)
        except OSError as e:
            logger.debug("Socket option not applied", option=option, error=str(e))


class ConnectionRelay:
    """Owns exactly one client socket and the upstream socket dialed for it.

    State machine: DIALING -> PIPING | CLOSING, PIPING -> CLOSING, CLOSING -> CLOSED.
    Every path ends in ``teardown()``, which releases the sockets and the
    server's active-connection slot exactly once.
    """

    def __init__(
        self,
        server: RelayServer,
        connection: Connection,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        target_host: str,
        target_port: int,
        *,
        dial_timeout: float = 30.0,
        keepalive_idle: int = 60,
    ) -> None:
        self.server = server
        self.connection = connection
        self.target_host = target_host
        self.target_port = target_port
        self.dial_timeout = dial_timeout
        self.keepalive_idle = keepalive_idle
        self._client_reader = client_reader
        self._client_writer = client_writer
        self._upstream_reader: asyncio.StreamReader | None = None
        self._upstream_writer: asyncio.StreamWriter | None = None
        self._released = False
        self._clean = False
        self._upstream_eof = False

    @property
    def id(self) -> int:
        return self.connection.id

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    async def run(self) -> None:
        """Dial the upstream, then relay bytes until both sides are done."""
        conn = self.connection
        try:
            try:
                self._upstream_reader, self._upstream_writer = await asyncio.wait_for(
                    asyncio.open_connection(self.target_host, self.target_port),
                    timeout=self.dial_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Connection timeout to upstream",
                    connection_id=conn.id,
                    target=f"{self.target_host}:{self.target_port}",
                    timeout=self.dial_timeout,
                )
                self.server.record_upstream_error(
                    f"connect timeout after {self.dial_timeout:g}s", kind="timeout"
                )
                return
            except OSError as e:
                logger.error("Upstream connect error", connection_id=conn.id, error=str(e))
                self.server.record_upstream_error(str(e) or e.__class__.__name__, kind="dial")
                return

            logger.info(
                "Connected to upstream",
                connection_id=conn.id,
                target=f"{self.target_host}:{self.target_port}",
            )
            self.server.record_upstream_success()
            tune_socket(self._client_writer, self.keepalive_idle)
            tune_socket(self._upstream_writer, self.keepalive_idle)

            conn.state = ConnectionState.PIPING
            error = await self._pipe_both_ways()
            if isinstance(error, UpstreamSideError):
                logger.error("Upstream error", connection_id=conn.id, error=str(error))
                self.server.record_upstream_error(str(error), kind="pipe")
            elif isinstance(error, ClientSideError):
                logger.warning("Client error", connection_id=conn.id, error=str(error))
            else:
                self._clean = True
        finally:
            self.teardown(abort=not self._clean)

    async def _pipe_both_ways(self) -> RelaySideError | None:
        assert self._upstream_reader is not None and self._upstream_writer is not None
        tasks = [
            asyncio.create_task(
                self._pipe(
                    self._client_reader,
                    self._upstream_writer,
                    read_error=ClientSideError,
                    write_error=UpstreamSideError,
                    direction="upstream",
                )
            ),
            asyncio.create_task(
                self._pipe(
                    self._upstream_reader,
                    self._client_writer,
                    read_error=UpstreamSideError,
                    write_error=ClientSideError,
                    direction="downstream",
                )
            ),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if isinstance(exc, RelaySideError):
                return exc
            if exc is not None:
                raise exc
        return None

    async def _pipe(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        read_error: type[RelaySideError],
        write_error: type[RelaySideError],
        direction: str,
    ) -> None:
        """Copy bytes until EOF, then half-close the destination."""
        conn = self.connection
        while True:
            try:
                data = await reader.read(READ_CHUNK_SIZE)
            except OSError as e:
                raise read_error(e) from e
            if not data:
                break
            try:
                writer.write(data)
                await writer.drain()
            except OSError as e:
                if self._closed_by_upstream(direction):
                    logger.debug(
                        "Dropping client data after upstream close",
                        connection_id=conn.id,
                        error=str(e),
                    )
                    return
                raise write_error(e) from e
            if direction == "upstream":
                conn.bytes_in += len(data)
            else:
                conn.bytes_out += len(data)
            BYTES_TRANSFERRED.labels(direction=direction).inc(len(data))

        if direction == "downstream":
            self._upstream_eof = True

        # Clean end-of-stream: propagate a matching half-close, keep the other direction open.
        if not writer.is_closing() and writer.can_write_eof():
            try:
                writer.write_eof()
            except OSError as e:
                if not self._closed_by_upstream(direction):
                    raise write_error(e) from e
        logger.debug("Half-close propagated", connection_id=conn.id, direction=direction)

    def _closed_by_upstream(self, direction: str) -> bool:
        """True when writes towards the upstream fail only because it already ended the session.

        A server that sends EOF and closes (a pooler dropping an idle session)
        resets any later client bytes. That is a normal end, not an upstream error.
        """
        return direction == "upstream" and self._upstream_eof

    def teardown(self, abort: bool = False) -> bool:
        """Release both sockets and the active-connection slot.

        Idempotent: only the first call does anything.

        Returns:
            True if this call performed the release.
        """
        if self._released:
            return False
        self._released = True
        conn = self.connection
        conn.state = ConnectionState.CLOSING

        for writer in (self._client_writer, self._upstream_writer):
            if writer is None:
                continue
            if abort:
                writer.transport.abort()
            elif not writer.is_closing():
                writer.close()

        conn.state = ConnectionState.CLOSED
        self.server.release(self)
        return True
