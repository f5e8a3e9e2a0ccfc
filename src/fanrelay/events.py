"""Relay event types and the publish-subscribe event stream.

Events are emitted by listeners, connection handlers and the replicator for
lifecycle transitions (bind, stop), inbound traffic and the outcome of every
forward attempt. Anything that wants to observe the relay subscribes to the
event types it cares about.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeAlias, TypeVar

logger = logging.getLogger("fanrelay.events")


class Outcome(Enum):
    """Result of a single forward attempt."""

    DELIVERED = "delivered"
    RESOLUTION_FAILED = "resolution_failed"
    CONNECT_FAILED = "connect_failed"
    WRITE_FAILED = "write_failed"
    DROPPED = "dropped"


# --- Event types ---


@dataclass(frozen=True)
class ListenerStarted:
    """Emitted when a listener has bound its socket and starts serving.

    Parameters
    ----------
    protocol : str
        ``"udp"`` or ``"tcp"``.
    address : str
        The configured listen address.
    local_address : tuple[str, int]
        The address the socket is actually bound to (resolves port 0).

    Examples
    --------
    >>> ListenerStarted(protocol="udp", address="127.0.0.1:9001",
    ...                 local_address=("127.0.0.1", 9001))
    """

    protocol: str
    address: str
    local_address: tuple[str, int]


@dataclass(frozen=True)
class ListenerBindFailed:
    """Emitted when a listener cannot bind. The listener exits afterwards.

    Parameters
    ----------
    protocol : str
        ``"udp"`` or ``"tcp"``.
    address : str
        The configured listen address.
    cause : Exception
        The bind error.
    """

    protocol: str
    address: str
    cause: Exception


@dataclass(frozen=True)
class ListenerStopped:
    """Emitted when a bound listener stops serving (shutdown)."""

    protocol: str
    address: str


@dataclass(frozen=True)
class UnitReceived:
    """Emitted for every inbound datagram or TCP chunk.

    Parameters
    ----------
    listener : str
        Listen address of the listener that produced the unit.
    source : str
        Remote ``host:port`` the data came from.
    size : int
        Number of payload bytes in the unit.
    """

    listener: str
    source: str
    size: int


@dataclass(frozen=True)
class ForwardResult:
    """Outcome of one forward attempt (one target, one inbound unit).

    Parameters
    ----------
    listener : str
        Listen address of the listener that produced the unit.
    target : str
        Target address the payload was addressed to.
    outcome : Outcome
        What happened to the attempt.
    size : int
        Payload size in bytes.
    error : Exception | None
        The failure cause, ``None`` when delivered.

    Examples
    --------
    >>> ForwardResult(listener="127.0.0.1:9001", target="127.0.0.1:9101",
    ...               outcome=Outcome.DELIVERED, size=5)
    """

    listener: str
    target: str
    outcome: Outcome
    size: int
    error: Exception | None = None


@dataclass(frozen=True)
class ConnectionOpened:
    """Emitted when a TCP listener accepts an inbound connection."""

    listener: str
    remote: str


@dataclass(frozen=True)
class ConnectionClosed:
    """Emitted when an inbound TCP connection ends.

    Parameters
    ----------
    listener : str
        Listen address of the accepting listener.
    remote : str
        Remote ``host:port`` of the closed connection.
    cause : Exception | None
        ``None`` when the peer closed the stream, the read error otherwise.
    """

    listener: str
    remote: str
    cause: Exception | None = None


# --- EventStream ---

E = TypeVar("E")
EventHandler: TypeAlias = Callable[[E], Awaitable[None] | None]


class EventStream:
    """Publish-subscribe bus for relay events.

    Sync handlers run inline. Async handlers run as their own tasks, so a
    slow observer never stalls a read loop or a forward attempt. Handler
    failures are logged and never reach the publisher.

    Examples
    --------
    >>> stream = EventStream()
    >>> stream.subscribe(ForwardResult, lambda e: print(e.outcome))
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[EventHandler[Any]]] = defaultdict(list)
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of async handler invocations still running."""
        return len(self._pending)

    def subscribe(self, event_type: type[E], handler: EventHandler[E]) -> None:
        """Register a handler for a specific event type.

        Parameters
        ----------
        event_type : type[E]
            The event class to listen for.
        handler : EventHandler[E]
            Sync or async callable invoked when the event is published.
        """
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: type[object], handler: EventHandler[object]) -> None:
        """Remove a previously registered handler."""
        handlers = self._subscribers.get(event_type)
        if handlers:
            handlers.remove(handler)

    async def publish(self, event: object) -> None:
        """Publish an event to all handlers subscribed to its exact type.

        Sync handlers are called directly; async handlers are scheduled and
        not awaited.
        """
        for handler in self._subscribers.get(type(event), []):
            try:
                result = handler(event)
            except Exception:
                logger.warning(
                    "Event handler failed for %s", type(event).__name__, exc_info=True
                )
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.get_running_loop().create_task(result)
                self._pending.add(task)
                task.add_done_callback(self._discard)

    async def drain(self) -> None:
        """Wait until every scheduled async handler has finished."""
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _discard(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.warning("Event handler failed: %s", exc, exc_info=exc)
