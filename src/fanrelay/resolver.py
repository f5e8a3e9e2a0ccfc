"""Target address resolution.

A resolver turns a configured ``host:port`` string into a concrete socket
address. The replicator only depends on the ``Resolver`` protocol so tests
and callers can plug in their own (e.g. a caching resolver).
"""

from __future__ import annotations

import asyncio
import socket
from typing import Protocol

from fanrelay.config import parse_address
from fanrelay.errors import ResolutionError


class Resolver(Protocol):
    async def __call__(
        self, address: str, *, family: int = 0, type: int = 0
    ) -> tuple[str, int]: ...


async def resolve_address(
    address: str, *, family: int = 0, type: int = 0
) -> tuple[str, int]:
    """Resolve *address* to the first ``(host, port)`` returned by the system.

    Parameters
    ----------
    address : str
        ``host:port`` or ``[v6]:port``.
    family : int
        Restrict results to an address family (``socket.AF_INET`` ...).
    type : int
        Restrict results to a socket type (``socket.SOCK_DGRAM`` ...).

    Raises
    ------
    ResolutionError
        If the address is malformed or the name does not resolve.

    Examples
    --------
    >>> await resolve_address("localhost:9101", family=socket.AF_INET)
    ('127.0.0.1', 9101)
    """
    try:
        host, port = parse_address(address)
    except ValueError as exc:
        raise ResolutionError(address, exc) from exc

    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, family=family, type=type)
    except (socket.gaierror, UnicodeError) as exc:
        raise ResolutionError(address, exc) from exc
    if not infos:
        raise ResolutionError(address)
    sockaddr = infos[0][4]
    return (str(sockaddr[0]), int(sockaddr[1]))
