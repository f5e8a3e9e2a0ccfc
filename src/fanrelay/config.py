"""TOML/JSON configuration for the relay.

Provides ``load_config`` / ``discover_config`` / ``parse_config`` for loading
``fanrelay.toml`` (or a legacy ``config.json``) and a hierarchy of frozen
dataclasses for listeners, dispatch bounds, forward timeouts and logging.

Example ``fanrelay.toml``::

    read_size = 1024

    [dispatch]
    max_inflight = 4096
    overflow = "drop_oldest"

    [[listeners]]
    protocol = "udp"
    listen_addr = "0.0.0.0:9001"
    targets = ["10.0.0.5:9101", "10.0.0.6:9101"]
"""

from __future__ import annotations

import json
import logging
import tomllib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal, TypeAlias

from fanrelay.errors import ConfigError, UnknownProtocolError


__all__ = [
    "DEFAULT_READ_SIZE",
    "DispatchConfig",
    "ForwardConfig",
    "ListenerSpec",
    "LoggingConfig",
    "OverflowPolicy",
    "Protocol",
    "RelayConfig",
    "discover_config",
    "load_config",
    "parse_address",
    "parse_config",
    "parse_listeners",
]

logger = logging.getLogger("fanrelay.config")

DEFAULT_READ_SIZE = 1024
CONFIG_FILENAMES = ("fanrelay.toml", "config.json")

OverflowPolicy: TypeAlias = Literal["drop_new", "drop_oldest"]
OVERFLOW_POLICIES: tuple[OverflowPolicy, ...] = ("drop_new", "drop_oldest")
LogFormat: TypeAlias = Literal["verbose", "compact", "minimal"]


class Protocol(Enum):
    """Closed set of listener kinds."""

    UDP = "udp"
    TCP = "tcp"

    @classmethod
    def parse(cls, value: Protocol | str) -> Protocol:
        """Map a configuration value onto a listener kind.

        Matching is exact: only ``"udp"`` and ``"tcp"`` are recognized.

        Raises
        ------
        UnknownProtocolError
            If *value* names no supported protocol.
        """
        if isinstance(value, Protocol):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownProtocolError(value) from None


def parse_address(raw: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts.

    Raises
    ------
    ValueError
        If the port is missing or not a number in ``0..65535``.

    Examples
    --------
    >>> parse_address("127.0.0.1:9001")
    ('127.0.0.1', 9001)
    >>> parse_address("[::1]:9001")
    ('::1', 9001)
    """
    host, sep, port_str = raw.rpartition(":")
    if not sep or not port_str.isdigit():
        msg = f"Invalid address {raw!r}, expected host:port"
        raise ValueError(msg)
    port = int(port_str)
    if port > 65535:
        msg = f"Invalid port in address {raw!r}"
        raise ValueError(msg)
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return (host, port)


@dataclass(frozen=True)
class ListenerSpec:
    """One listener and the targets it replicates to.

    Parameters
    ----------
    protocol : Protocol
        Listener kind. Plain strings are accepted and parsed; anything
        unrecognized raises ``UnknownProtocolError``.
    listen_address : str
        ``host:port`` to bind.
    targets : tuple[str, ...]
        Target addresses. Duplicates are kept and each gets its own attempt.

    Examples
    --------
    >>> spec = ListenerSpec("udp", "127.0.0.1:9001", ("127.0.0.1:9101",))
    >>> spec.protocol
    <Protocol.UDP: 'udp'>
    """

    protocol: Protocol
    listen_address: str
    targets: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "protocol", Protocol.parse(self.protocol))
        object.__setattr__(self, "targets", tuple(self.targets))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ListenerSpec:
        """Build a spec from one ``listeners`` entry.

        Both the ``listen_addr``/``targets`` and the ``listenAddr``/
        ``targetServers`` spellings are accepted. The listen address is checked
        when the listener binds, so a malformed one fails only that listener.
        """
        protocol = Protocol.parse(raw.get("protocol", ""))
        listen = raw.get("listen_addr", raw.get("listenAddr"))
        if not isinstance(listen, str):
            msg = f"Listener entry without listen address: {dict(raw)!r}"
            raise ConfigError(msg)
        targets = raw.get("targets", raw.get("targetServers", []))
        if not isinstance(targets, list) or not all(isinstance(t, str) for t in targets):
            msg = f"Targets of {listen} must be a list of strings"
            raise ConfigError(msg)
        return cls(
            protocol=protocol,
            listen_address=listen,
            targets=tuple(targets),
        )


@dataclass(frozen=True)
class DispatchConfig:
    """Admission control for forward attempts, per listener.

    Parameters
    ----------
    max_inflight : int | None
        Maximum concurrent forward attempts. ``None`` for unbounded.
    overflow : OverflowPolicy
        What happens when the bound is reached: ``"drop_new"`` skips the new
        attempt, ``"drop_oldest"`` cancels the oldest in-flight attempt.

    Examples
    --------
    >>> DispatchConfig(max_inflight=1000, overflow="drop_oldest")
    DispatchConfig(max_inflight=1000, overflow='drop_oldest')
    """

    max_inflight: int | None = None
    overflow: OverflowPolicy = "drop_new"

    def __post_init__(self) -> None:
        if self.max_inflight is not None and self.max_inflight < 1:
            msg = f"max_inflight must be positive, got {self.max_inflight}"
            raise ConfigError(msg)
        if self.overflow not in OVERFLOW_POLICIES:
            msg = f"Unknown overflow policy: {self.overflow}"
            raise ConfigError(msg)


@dataclass(frozen=True)
class ForwardConfig:
    """Deadlines for forward attempts, in seconds. ``None`` waits forever.

    Parameters
    ----------
    connect_timeout : float | None
        Applies to address resolution and TCP connect.
    write_timeout : float | None
        Applies to writing the payload.
    """

    connect_timeout: float | None = None
    write_timeout: float | None = None

    def __post_init__(self) -> None:
        for name in ("connect_timeout", "write_timeout"):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
                msg = f"{name} must be a positive number of seconds, got {value!r}"
                raise ConfigError(msg)


@dataclass(frozen=True)
class LoggingConfig:
    """Console logging settings used by the command line."""

    level: str = "INFO"
    format: LogFormat = "verbose"
    colors: bool | None = None


@dataclass(frozen=True)
class RelayConfig:
    """Top-level relay configuration.

    Parameters
    ----------
    listeners : tuple[ListenerSpec, ...]
        Listeners to start.
    read_size : int
        Per-read buffer size; larger datagrams are truncated to this size.
    dispatch : DispatchConfig
        Forward attempt admission control.
    forward : ForwardConfig
        Forward attempt deadlines.
    logging : LoggingConfig
        Console logging settings.

    Examples
    --------
    >>> config = RelayConfig()
    >>> config.read_size
    1024
    """

    listeners: tuple[ListenerSpec, ...] = ()
    read_size: int = DEFAULT_READ_SIZE
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    forward: ForwardConfig = field(default_factory=ForwardConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self) -> None:
        if self.read_size < 1:
            msg = f"read_size must be positive, got {self.read_size}"
            raise ConfigError(msg)


def parse_listeners(entries: Iterable[Mapping[str, Any]]) -> tuple[ListenerSpec, ...]:
    """Build listener specs, skipping entries with an unknown protocol.

    An unknown protocol is logged and only that entry is dropped; every other
    malformed entry raises ``ConfigError``.
    """
    specs: list[ListenerSpec] = []
    for raw in entries:
        try:
            specs.append(ListenerSpec.from_mapping(raw))
        except UnknownProtocolError as exc:
            logger.error(
                "Unknown protocol: %s (listener %s skipped)",
                exc.protocol,
                raw.get("listen_addr", raw.get("listenAddr")),
            )
    return tuple(specs)


def parse_config(raw: Mapping[str, Any]) -> RelayConfig:
    """Build a ``RelayConfig`` from an already decoded document.

    Raises
    ------
    ConfigError
        On any invalid section or value.
    """
    try:
        return RelayConfig(
            listeners=parse_listeners(raw.get("listeners", [])),
            read_size=raw.get("read_size", raw.get("readSize", DEFAULT_READ_SIZE)),
            dispatch=DispatchConfig(**raw.get("dispatch", {})),
            forward=ForwardConfig(**raw.get("forward", {})),
            logging=LoggingConfig(**raw.get("logging", {})),
        )
    except TypeError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def discover_config(start: Path | None = None) -> Path | None:
    """Walk up from *start* (default: cwd) looking for a config file.

    ``fanrelay.toml`` wins over ``config.json`` in the same directory.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        for name in CONFIG_FILENAMES:
            candidate = current / name
            if candidate.is_file():
                return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(path: Path | None = None) -> RelayConfig:
    """Load a ``RelayConfig`` from a TOML file, or JSON for ``.json`` paths.

    If *path* is ``None``, auto-discovers a config file by walking up from the
    current working directory.

    Raises
    ------
    ConfigError
        If no file is found, it cannot be decoded, or holds invalid values.

    Examples
    --------
    >>> config = load_config(Path("fanrelay.toml"))
    >>> [spec.protocol for spec in config.listeners]
    [<Protocol.UDP: 'udp'>]
    """
    if path is None:
        path = discover_config()
        if path is None:
            msg = f"No {' or '.join(CONFIG_FILENAMES)} found"
            raise ConfigError(msg)

    if not path.is_file():
        msg = f"Config file not found: {path}"
        raise ConfigError(msg)

    try:
        with path.open("rb") as f:
            if path.suffix == ".json":
                raw = json.load(f)
            else:
                raw = tomllib.load(f)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc

    if not isinstance(raw, dict):
        msg = f"{path} must contain a table/object at the top level"
        raise ConfigError(msg)

    logger.debug("Loaded configuration from %s", path)
    return parse_config(raw)
