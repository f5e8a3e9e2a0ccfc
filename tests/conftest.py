from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest

from fanrelay.events import EventStream
from fanrelay.listener import Listener
from tests.helpers import TIMEOUT, TcpSink, UdpSink


@pytest.fixture
def event_stream() -> EventStream:
    return EventStream()


@pytest.fixture
async def udp_sink() -> AsyncIterator[Callable[[], Awaitable[UdpSink]]]:
    transports: list[asyncio.DatagramTransport] = []

    async def make() -> UdpSink:
        loop = asyncio.get_running_loop()
        transport, sink = await loop.create_datagram_endpoint(
            UdpSink, local_addr=("127.0.0.1", 0)
        )
        transports.append(transport)
        host, port = transport.get_extra_info("sockname")[:2]
        sink.address = f"{host}:{port}"
        return sink

    yield make
    for transport in transports:
        transport.close()


@pytest.fixture
async def tcp_sink() -> AsyncIterator[Callable[[], Awaitable[TcpSink]]]:
    sinks: list[TcpSink] = []

    async def make() -> TcpSink:
        sink = TcpSink()
        sink.server = await asyncio.start_server(sink.handle, "127.0.0.1", 0)
        host, port = sink.server.sockets[0].getsockname()[:2]
        sink.address = f"{host}:{port}"
        sinks.append(sink)
        return sink

    yield make
    for sink in sinks:
        assert sink.server is not None
        sink.server.close()


@pytest.fixture
async def serving() -> AsyncIterator[Callable[[Listener], Awaitable[Listener]]]:
    """Run listeners in the background and cancel them at teardown."""
    tasks: list[asyncio.Task[None]] = []

    async def start(listener: Listener) -> Listener:
        tasks.append(asyncio.create_task(listener.serve()))
        await asyncio.wait_for(listener.wait_bound(), TIMEOUT)
        return listener

    yield start
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
