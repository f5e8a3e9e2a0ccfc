"""UDP listener - reads datagrams and forwards them from the same socket.

Forwarding reuses the bound inbound socket as the outbound socket, so
targets see the listener's address as the datagram source. There is no
session or reply path.
"""

from __future__ import annotations

import asyncio
import logging
import socket

from fanrelay.config import ForwardConfig, parse_address
from fanrelay.errors import ResolutionError, WriteError
from fanrelay.events import UnitReceived
from fanrelay.listener import Listener, format_address
from fanrelay.replicator import InboundUnit, Replicator
from fanrelay.resolver import Resolver

logger = logging.getLogger("fanrelay.udp")


class UdpDelivery:
    """Send each payload as one datagram from the listener's socket."""

    def __init__(
        self,
        sock: socket.socket,
        *,
        resolver: Resolver,
        forward: ForwardConfig,
    ) -> None:
        self._sock = sock
        self._resolver = resolver
        self._forward = forward

    async def deliver(self, target: str, payload: bytes) -> None:
        try:
            addr = await asyncio.wait_for(
                self._resolver(target, family=self._sock.family, type=socket.SOCK_DGRAM),
                timeout=self._forward.connect_timeout,
            )
        except TimeoutError as exc:
            raise ResolutionError(target, exc) from exc

        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.sock_sendto(self._sock, payload, addr),
                timeout=self._forward.write_timeout,
            )
        except (OSError, TimeoutError) as exc:
            raise WriteError(target, exc) from exc


class UdpListener(Listener):
    """Bind one UDP socket and fan out every datagram it receives.

    Datagrams are read into a single reusable buffer of ``read_size`` bytes;
    anything longer is truncated. Read errors (e.g. ICMP port unreachable
    reported for an earlier send) are logged and the loop keeps going.

    Examples
    --------
    >>> listener = UdpListener(ListenerSpec("udp", "127.0.0.1:9001", targets))
    >>> await listener.serve()
    """

    protocol = "udp"
    _logger = logger

    _sock: socket.socket | None = None

    async def _bind(self) -> tuple[str, int]:
        host, port = parse_address(self.spec.listen_address)
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(
            host or None, port, type=socket.SOCK_DGRAM, flags=socket.AI_PASSIVE
        )
        family, type_, proto, _, sockaddr = infos[0]
        sock = socket.socket(family, type_, proto)
        try:
            sock.setblocking(False)
            sock.bind(sockaddr)
        except OSError:
            sock.close()
            raise

        self._sock = sock
        self._replicator = Replicator(
            UdpDelivery(sock, resolver=self._resolver, forward=self._forward),
            listener=self.spec.listen_address,
            events=self._events,
            dispatch=self._dispatch,
        )
        local = sock.getsockname()
        return (local[0], local[1])

    async def _serve_forever(self) -> None:
        assert self._sock is not None and self._replicator is not None
        loop = asyncio.get_running_loop()
        sock = self._sock
        buf = bytearray(self._read_size)

        while True:
            try:
                n, addr = await loop.sock_recvfrom_into(sock, buf)
            except OSError as exc:
                logger.warning(
                    "Error reading UDP packet on %s: %s", self.spec.listen_address, exc
                )
                continue

            source = format_address(addr)
            logger.debug("Received UDP packet from %s (%d bytes)", source, n)
            await self._publish(UnitReceived(self.spec.listen_address, source, n))
            await self._replicator.fan_out(InboundUnit(buf[:n], self.spec.targets, source))

    async def _shutdown(self) -> None:
        if self._replicator is not None:
            await self._replicator.close()
        if self._sock is not None:
            self._sock.close()
