"""Common lifecycle for UDP and TCP listeners.

States:
    starting   -> created, bind not attempted yet
    bound      -> socket bound, about to serve
    serving    -> read/accept loop running
    terminated -> bind failed, or the loop was stopped
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum, auto
from typing import Any, ClassVar

from fanrelay.config import DEFAULT_READ_SIZE, DispatchConfig, ForwardConfig, ListenerSpec
from fanrelay.events import EventStream, ListenerBindFailed, ListenerStarted, ListenerStopped
from fanrelay.replicator import Replicator
from fanrelay.resolver import Resolver, resolve_address


class ListenerState(Enum):
    STARTING = auto()
    BOUND = auto()
    SERVING = auto()
    TERMINATED = auto()


def format_address(addr: Any) -> str:
    """Render a socket address as ``host:port`` (``[v6]:port`` for IPv6)."""
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(addr) if addr else "unknown"


class Listener(ABC):
    """Base class for a bound endpoint producing inbound units.

    ``serve()`` binds, then runs the read or accept loop until cancelled.
    A bind failure is logged and published and ``serve()`` simply returns;
    it never raises into the supervisor.

    Parameters
    ----------
    spec : ListenerSpec
        What to bind and where to replicate.
    events : EventStream | None
        Observer for lifecycle and traffic events.
    resolver : Resolver
        Target address resolution.
    read_size : int
        Size of each read.
    dispatch : DispatchConfig | None
        Forward attempt admission control.
    forward : ForwardConfig | None
        Forward attempt deadlines.
    """

    protocol: ClassVar[str]
    _logger: ClassVar[logging.Logger]

    def __init__(
        self,
        spec: ListenerSpec,
        *,
        events: EventStream | None = None,
        resolver: Resolver = resolve_address,
        read_size: int = DEFAULT_READ_SIZE,
        dispatch: DispatchConfig | None = None,
        forward: ForwardConfig | None = None,
    ) -> None:
        self.spec = spec
        self._events = events
        self._resolver = resolver
        self._read_size = read_size
        self._dispatch = dispatch or DispatchConfig()
        self._forward = forward or ForwardConfig()
        self._state = ListenerState.STARTING
        self._local_address: tuple[str, int] | None = None
        self._bind_attempted = asyncio.Event()
        self._replicator: Replicator | None = None

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def local_address(self) -> tuple[str, int] | None:
        """Address the socket is bound to, ``None`` until bound."""
        return self._local_address

    @property
    def replicator(self) -> Replicator | None:
        return self._replicator

    async def wait_bound(self) -> bool:
        """Wait for the bind attempt; return whether it succeeded."""
        await self._bind_attempted.wait()
        return self._local_address is not None

    async def serve(self) -> None:
        """Bind and serve until cancelled. Returns early if the bind fails."""
        address = self.spec.listen_address
        try:
            try:
                self._local_address = await self._bind()
            except (OSError, ValueError) as exc:
                self._state = ListenerState.TERMINATED
                self._logger.error(
                    "Error starting %s listener on %s: %s",
                    self.protocol.upper(),
                    address,
                    exc,
                )
                await self._publish(ListenerBindFailed(self.protocol, address, exc))
                return
        finally:
            self._bind_attempted.set()

        self._state = ListenerState.BOUND
        self._logger.info(
            "%s listener started on %s", self.protocol.upper(), format_address(self._local_address)
        )
        await self._publish(ListenerStarted(self.protocol, address, self._local_address))

        self._state = ListenerState.SERVING
        try:
            await self._serve_forever()
        finally:
            self._state = ListenerState.TERMINATED
            await self._shutdown()
            self._logger.info("%s listener on %s stopped", self.protocol.upper(), address)
            await self._publish(ListenerStopped(self.protocol, address))

    @abstractmethod
    async def _bind(self) -> tuple[str, int]:
        """Bind the socket and build the replicator; return the local address."""

    @abstractmethod
    async def _serve_forever(self) -> None: ...

    @abstractmethod
    async def _shutdown(self) -> None: ...

    async def _publish(self, event: object) -> None:
        if self._events is not None:
            await self._events.publish(event)
