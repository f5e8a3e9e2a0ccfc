"""Exception hierarchy for the relay.

Forward errors never leave a forward attempt; they are classified into an
``Outcome`` by the replicator. Config errors are the only ones that reach the
command line.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every relay error."""


class ConfigError(RelayError):
    """Invalid or unreadable relay configuration."""


class UnknownProtocolError(ConfigError):
    """A listener entry names a protocol the relay does not support."""

    def __init__(self, protocol: object) -> None:
        super().__init__(f"Unknown protocol: {protocol}")
        self.protocol = protocol


class ForwardError(RelayError):
    """A single forward attempt failed.

    Parameters
    ----------
    target : str
        The target address the attempt was addressed to.
    cause : BaseException | None
        The underlying transport error, if any.
    """

    def __init__(self, target: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{type(self).__name__} for {target}{detail}")
        self.target = target
        self.cause = cause


class ResolutionError(ForwardError):
    """The target address could not be parsed or resolved."""


class DialError(ForwardError):
    """An outbound TCP connection to the target could not be established."""


class WriteError(ForwardError):
    """The payload could not be written to the target."""
