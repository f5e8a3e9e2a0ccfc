"""Fan-out of inbound units to every configured target.

Every target of a unit gets exactly one forward attempt running as its own
``asyncio.Task``. ``fan_out`` never waits for an attempt, so a slow or dead
target cannot hold up the read loop that produced the unit, and a failed
attempt is only logged and published, never raised.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from fanrelay.config import DispatchConfig
from fanrelay.errors import DialError, ForwardError, ResolutionError
from fanrelay.events import EventStream, ForwardResult, Outcome

logger = logging.getLogger("fanrelay.replicator")


@dataclass(frozen=True)
class InboundUnit:
    """One received datagram or TCP chunk and the targets it goes to.

    The payload is always materialized as an independent ``bytes`` object,
    so a unit built from a reusable receive buffer (``bytearray`` or
    ``memoryview``) keeps its bytes after the buffer is overwritten.

    Parameters
    ----------
    payload : bytes
        The received bytes.
    targets : tuple[str, ...]
        Target addresses, one forward attempt each.
    source : str
        Remote ``host:port`` the bytes came from.

    Examples
    --------
    >>> buf = bytearray(b"hello")
    >>> unit = InboundUnit(buf[:5], ("127.0.0.1:9101",))
    >>> buf[:] = b"xxxxx"
    >>> unit.payload
    b'hello'
    """

    payload: bytes
    targets: tuple[str, ...]
    source: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", bytes(self.payload))
        object.__setattr__(self, "targets", tuple(self.targets))


class Delivery(Protocol):
    """Transport-specific way of getting one payload to one target.

    Implementations raise ``ResolutionError``, ``DialError`` or
    ``WriteError`` on failure.
    """

    async def deliver(self, target: str, payload: bytes) -> None: ...


def classify(exc: ForwardError) -> Outcome:
    match exc:
        case ResolutionError():
            return Outcome.RESOLUTION_FAILED
        case DialError():
            return Outcome.CONNECT_FAILED
        case _:
            return Outcome.WRITE_FAILED


class Replicator:
    """Dispatch forward attempts for one listener.

    Parameters
    ----------
    delivery : Delivery
        How payloads reach a target (UDP send, TCP connect-write-close).
    listener : str
        Listen address of the owning listener, used in events and logs.
    events : EventStream | None
        Receives one ``ForwardResult`` per attempt.
    dispatch : DispatchConfig | None
        Bound on concurrent attempts and the overflow policy.
        Defaults to unbounded.

    Examples
    --------
    >>> replicator = Replicator(delivery, listener="127.0.0.1:9001")
    >>> attempts = await replicator.fan_out(InboundUnit(b"hi", targets))
    >>> results = await asyncio.gather(*attempts)
    """

    def __init__(
        self,
        delivery: Delivery,
        *,
        listener: str = "",
        events: EventStream | None = None,
        dispatch: DispatchConfig | None = None,
    ) -> None:
        self._delivery = delivery
        self._listener = listener
        self._events = events
        self._dispatch = dispatch or DispatchConfig()
        # insertion order is attempt age, oldest first
        self._inflight: dict[asyncio.Task[ForwardResult], tuple[str, int]] = {}

    @property
    def inflight(self) -> int:
        """Number of forward attempts currently running."""
        return len(self._inflight)

    async def fan_out(self, unit: InboundUnit) -> list[asyncio.Future[ForwardResult]]:
        """Start one forward attempt per target and return without waiting.

        Returns
        -------
        list[asyncio.Future[ForwardResult]]
            One future per target, in target order. Attempts rejected by
            the ``drop_new`` policy are already resolved with ``DROPPED``;
            attempts evicted by ``drop_oldest`` end up cancelled.
        """
        loop = asyncio.get_running_loop()
        attempts: list[asyncio.Future[ForwardResult]] = []
        size = len(unit.payload)
        limit = self._dispatch.max_inflight

        for target in unit.targets:
            if limit is not None and len(self._inflight) >= limit:
                match self._dispatch.overflow:
                    case "drop_new":
                        dropped = loop.create_future()
                        dropped.set_result(await self._drop(target, size))
                        attempts.append(dropped)
                        continue
                    case "drop_oldest":
                        await self._evict_oldest()

            task = loop.create_task(self._attempt(target, unit))
            self._inflight[task] = (target, size)
            task.add_done_callback(self._discard)
            attempts.append(task)

        return attempts

    async def drain(self) -> None:
        """Wait until every in-flight attempt has finished."""
        while self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def close(self) -> None:
        """Cancel every in-flight attempt."""
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    async def _attempt(self, target: str, unit: InboundUnit) -> ForwardResult:
        size = len(unit.payload)
        try:
            await self._delivery.deliver(target, unit.payload)
        except ForwardError as exc:
            result = ForwardResult(self._listener, target, classify(exc), size, exc)
            logger.warning("Error forwarding to %s: %s", target, exc)
        else:
            result = ForwardResult(self._listener, target, Outcome.DELIVERED, size)
            logger.debug("Forwarded %d bytes to %s", size, target)
        await self._publish(result)
        return result

    async def _drop(self, target: str, size: int) -> ForwardResult:
        logger.warning(
            "Dispatch limit %s reached on %s, dropping attempt to %s",
            self._dispatch.max_inflight,
            self._listener,
            target,
        )
        result = ForwardResult(self._listener, target, Outcome.DROPPED, size)
        await self._publish(result)
        return result

    async def _evict_oldest(self) -> None:
        while self._inflight:
            task = next(iter(self._inflight))
            target, size = self._inflight.pop(task)
            if task.done():
                continue
            task.cancel()
            await self._drop(target, size)
            return

    def _discard(self, task: asyncio.Task[ForwardResult]) -> None:
        self._inflight.pop(task, None)
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.error("Forward attempt crashed", exc_info=exc)

    async def _publish(self, event: ForwardResult) -> None:
        if self._events is not None:
            await self._events.publish(event)
