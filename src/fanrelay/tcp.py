"""TCP listener and per-connection handler.

Each chunk read from an inbound connection is forwarded over a brand-new
outbound connection per target: connect, write the chunk, close. Outbound
connections are not correlated with the inbound connection, so a target sees
one short-lived connection per chunk.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any

from fanrelay.config import ForwardConfig, parse_address
from fanrelay.errors import DialError, ResolutionError, WriteError
from fanrelay.events import ConnectionClosed, ConnectionOpened, EventStream, UnitReceived
from fanrelay.listener import Listener, format_address
from fanrelay.replicator import InboundUnit, Replicator
from fanrelay.resolver import Resolver

logger = logging.getLogger("fanrelay.tcp")


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


class TcpDelivery:
    """Connect, write one payload, close."""

    def __init__(self, *, resolver: Resolver, forward: ForwardConfig) -> None:
        self._resolver = resolver
        self._forward = forward

    async def deliver(self, target: str, payload: bytes) -> None:
        try:
            host, port = await asyncio.wait_for(
                self._resolver(target, type=socket.SOCK_STREAM),
                timeout=self._forward.connect_timeout,
            )
        except TimeoutError as exc:
            raise ResolutionError(target, exc) from exc

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self._forward.connect_timeout,
            )
        except (OSError, TimeoutError) as exc:
            raise DialError(target, exc) from exc

        try:
            writer.write(payload)
            await asyncio.wait_for(writer.drain(), timeout=self._forward.write_timeout)
        except (OSError, TimeoutError) as exc:
            raise WriteError(target, exc) from exc
        finally:
            await _close_writer(writer)


class ConnectionHandler:
    """Read chunks from one inbound connection and fan each one out.

    The loop ends on end-of-stream or on a read error; the inbound
    connection is closed on every exit path.

    Parameters
    ----------
    reader : asyncio.StreamReader
        Inbound side of the accepted connection.
    writer : asyncio.StreamWriter
        Used for the peer address and for closing.
    replicator : Replicator
        The owning listener's replicator.
    targets : tuple[str, ...]
        Where every chunk goes.
    listener : str
        Listen address of the owning listener.
    events : EventStream | None
        Observer for connection and traffic events.
    read_size : int
        Maximum chunk size.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        replicator: Replicator,
        targets: tuple[str, ...],
        *,
        listener: str,
        events: EventStream | None,
        read_size: int,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._replicator = replicator
        self._targets = targets
        self._listener = listener
        self._events = events
        self._read_size = read_size
        self.remote = format_address(writer.get_extra_info("peername"))

    async def handle(self) -> None:
        logger.info("New TCP connection from %s", self.remote)
        await self._publish(ConnectionOpened(self._listener, self.remote))

        cause: Exception | None = None
        try:
            while True:
                try:
                    chunk = await self._reader.read(self._read_size)
                except (ConnectionError, OSError) as exc:
                    logger.warning("Error reading from TCP connection %s: %s", self.remote, exc)
                    cause = exc
                    break
                if not chunk:
                    logger.info("Connection closed by %s", self.remote)
                    break

                await self._publish(UnitReceived(self._listener, self.remote, len(chunk)))
                await self._replicator.fan_out(InboundUnit(chunk, self._targets, self.remote))
        finally:
            await _close_writer(self._writer)
            await self._publish(ConnectionClosed(self._listener, self.remote, cause))

    async def _publish(self, event: object) -> None:
        if self._events is not None:
            await self._events.publish(event)


class TcpListener(Listener):
    """Bind one TCP socket and run a ``ConnectionHandler`` per connection.

    Accepting is done by the asyncio server, which logs accept errors and
    keeps accepting; a handler never delays the next accept. Handler tasks
    are tracked so shutdown can cancel them.
    """

    protocol = "tcp"
    _logger = logger

    _server: asyncio.Server | None = None

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._connections: set[asyncio.Task[None]] = set()

    @property
    def connections(self) -> int:
        """Number of inbound connections currently being handled."""
        return len(self._connections)

    async def _bind(self) -> tuple[str, int]:
        host, port = parse_address(self.spec.listen_address)
        self._replicator = Replicator(
            TcpDelivery(resolver=self._resolver, forward=self._forward),
            listener=self.spec.listen_address,
            events=self._events,
            dispatch=self._dispatch,
        )
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(
            host or None, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )
        # bind the first resolved address only
        family, type_, proto, _, sockaddr = infos[0]
        sock = socket.socket(family, type_, proto)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            self._server = await asyncio.start_server(self._on_accept, sock=sock)
        except OSError:
            sock.close()
            raise

        local = sock.getsockname()
        return (local[0], local[1])

    async def _on_accept(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        assert self._replicator is not None
        task = asyncio.current_task()
        assert task is not None
        self._connections.add(task)
        try:
            handler = ConnectionHandler(
                reader,
                writer,
                self._replicator,
                self.spec.targets,
                listener=self.spec.listen_address,
                events=self._events,
                read_size=self._read_size,
            )
            await handler.handle()
        finally:
            self._connections.discard(task)

    async def _serve_forever(self) -> None:
        # start_server is already accepting; park until cancelled so that
        # shutdown can cancel handlers before the server waits on them
        await asyncio.get_running_loop().create_future()

    async def _shutdown(self) -> None:
        if self._server is not None:
            self._server.close()
        connections = list(self._connections)
        for task in connections:
            task.cancel()
        await asyncio.gather(*connections, return_exceptions=True)
        if self._replicator is not None:
            await self._replicator.close()
        if self._server is not None:
            await self._server.wait_closed()
