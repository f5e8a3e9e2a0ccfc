"""Listener supervision.

The supervisor owns one worker task per configured listener. ``run()``
returns only once every worker has exited; under normal operation that
never happens, since listeners only exit on a bind failure or on
``stop()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import assert_never

from fanrelay.config import ListenerSpec, Protocol, RelayConfig
from fanrelay.events import EventStream
from fanrelay.listener import Listener
from fanrelay.resolver import Resolver, resolve_address
from fanrelay.tcp import TcpListener
from fanrelay.udp import UdpListener

logger = logging.getLogger("fanrelay.supervisor")


class Supervisor:
    """Start one listener per spec and keep them running.

    Parameters
    ----------
    config : RelayConfig | Sequence[ListenerSpec]
        Full configuration, or just the listeners (defaults elsewhere).
    events : EventStream | None
        Shared observer handed to every listener.
    resolver : Resolver
        Target address resolution used by every listener.

    Examples
    --------
    >>> supervisor = Supervisor(load_config())
    >>> await supervisor.run()

    >>> async with Supervisor(specs) as supervisor:
    ...     await supervisor.wait_bound()
    """

    def __init__(
        self,
        config: RelayConfig | Sequence[ListenerSpec],
        *,
        events: EventStream | None = None,
        resolver: Resolver = resolve_address,
    ) -> None:
        if not isinstance(config, RelayConfig):
            config = RelayConfig(listeners=tuple(config))
        self._config = config
        self._events = events if events is not None else EventStream()
        self._resolver = resolver
        self._listeners: list[Listener] = []
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def events(self) -> EventStream:
        return self._events

    @property
    def listeners(self) -> tuple[Listener, ...]:
        return tuple(self._listeners)

    def start(self) -> None:
        """Spawn one worker per listener spec without waiting on them."""
        if self._tasks:
            raise RuntimeError("Supervisor already started")
        loop = asyncio.get_running_loop()
        for spec in self._config.listeners:
            listener = self._make_listener(spec)
            task = loop.create_task(
                self._supervise(listener), name=f"{spec.protocol.value}:{spec.listen_address}"
            )
            self._listeners.append(listener)
            self._tasks.append(task)
        logger.info("Started %d listener(s)", len(self._tasks))

    async def wait_bound(self) -> int:
        """Wait until every listener attempted its bind; return how many bound."""
        results = await asyncio.gather(*(listener.wait_bound() for listener in self._listeners))
        return sum(results)

    async def wait(self) -> None:
        """Wait until every worker has exited."""
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def run(self) -> None:
        """Start every listener and block until all of them have exited."""
        if not self._tasks:
            self.start()
        await self.wait()
        logger.info("All listeners terminated")

    async def stop(self) -> None:
        """Cancel every worker and wait for their shutdown to complete."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Supervisor stopped")

    async def __aenter__(self) -> Supervisor:
        self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    def _make_listener(self, spec: ListenerSpec) -> Listener:
        listener_cls: type[Listener]
        match spec.protocol:
            case Protocol.UDP:
                listener_cls = UdpListener
            case Protocol.TCP:
                listener_cls = TcpListener
            case _:
                assert_never(spec.protocol)
        return listener_cls(
            spec,
            events=self._events,
            resolver=self._resolver,
            read_size=self._config.read_size,
            dispatch=self._config.dispatch,
            forward=self._config.forward,
        )

    async def _supervise(self, listener: Listener) -> None:
        try:
            await listener.serve()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "%s listener on %s crashed",
                listener.protocol.upper(),
                listener.spec.listen_address,
            )


async def run(
    listeners: RelayConfig | Sequence[ListenerSpec],
    *,
    events: EventStream | None = None,
    resolver: Resolver = resolve_address,
) -> None:
    """Run a supervisor for *listeners* until every listener has exited."""
    await Supervisor(listeners, events=events, resolver=resolver).run()
