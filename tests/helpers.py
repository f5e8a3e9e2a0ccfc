"""Loopback sinks, fake deliveries and an event recorder shared by the tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from fanrelay.errors import ForwardError
from fanrelay.events import EventStream

TIMEOUT = 2.0


class UdpSink(asyncio.DatagramProtocol):
    """Collects every datagram it receives."""

    def __init__(self) -> None:
        self.received: asyncio.Queue[bytes] = asyncio.Queue()
        self.address = ""

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.received.put_nowait(data)

    async def next(self) -> bytes:
        return await asyncio.wait_for(self.received.get(), TIMEOUT)


class TcpSink:
    """Collects the full byte stream of every inbound connection, one entry each."""

    def __init__(self) -> None:
        self.connections: asyncio.Queue[bytes] = asyncio.Queue()
        self.address = ""
        self.server: asyncio.Server | None = None

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        data = await reader.read()
        self.connections.put_nowait(data)
        writer.close()

    async def next(self) -> bytes:
        return await asyncio.wait_for(self.connections.get(), TIMEOUT)


class EventRecorder:
    """Records published events of the given types."""

    def __init__(self, stream: EventStream, *event_types: type) -> None:
        self.events: list[Any] = []
        self._arrived = asyncio.Event()
        for event_type in event_types:
            stream.subscribe(event_type, self._record)

    def _record(self, event: Any) -> None:
        self.events.append(event)
        self._arrived.set()

    def of(self, event_type: type) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]

    async def wait_for(self, event_type: type, count: int = 1) -> list[Any]:
        async def _wait() -> list[Any]:
            while len(self.of(event_type)) < count:
                self._arrived.clear()
                await self._arrived.wait()
            return self.of(event_type)

        return await asyncio.wait_for(_wait(), TIMEOUT)


async def wait_until(predicate: Callable[[], bool]) -> None:
    """Poll *predicate* until it holds, failing after ``TIMEOUT``."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), TIMEOUT)


class RecordingDelivery:
    """Fake delivery: records calls, optionally waits on a gate or fails."""

    def __init__(
        self,
        failures: dict[str, ForwardError] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.failures = failures or {}
        self.gate = gate
        self.calls: list[tuple[str, bytes]] = []
        self.started: list[str] = []

    async def deliver(self, target: str, payload: bytes) -> None:
        self.started.append(target)
        if self.gate is not None:
            await self.gate.wait()
        self.calls.append((target, payload))
        if target in self.failures:
            raise self.failures[target]


