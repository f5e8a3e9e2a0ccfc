"""fanrelay - replicate UDP datagrams and TCP streams to many targets."""

from fanrelay.config import (
    DispatchConfig,
    ForwardConfig,
    ListenerSpec,
    LoggingConfig,
    Protocol,
    RelayConfig,
    discover_config,
    load_config,
    parse_address,
    parse_config,
)
from fanrelay.errors import (
    ConfigError,
    DialError,
    ForwardError,
    RelayError,
    ResolutionError,
    UnknownProtocolError,
    WriteError,
)
from fanrelay.events import (
    ConnectionClosed,
    ConnectionOpened,
    EventStream,
    ForwardResult,
    ListenerBindFailed,
    ListenerStarted,
    ListenerStopped,
    Outcome,
    UnitReceived,
)
from fanrelay.listener import Listener, ListenerState
from fanrelay.replicator import InboundUnit, Replicator
from fanrelay.resolver import resolve_address
from fanrelay.supervisor import Supervisor, run
from fanrelay.tcp import ConnectionHandler, TcpListener
from fanrelay.udp import UdpListener

__all__ = [
    # Config
    "DispatchConfig",
    "ForwardConfig",
    "ListenerSpec",
    "LoggingConfig",
    "Protocol",
    "RelayConfig",
    "discover_config",
    "load_config",
    "parse_address",
    "parse_config",
    # Errors
    "ConfigError",
    "DialError",
    "ForwardError",
    "RelayError",
    "ResolutionError",
    "UnknownProtocolError",
    "WriteError",
    # Events
    "ConnectionClosed",
    "ConnectionOpened",
    "EventStream",
    "ForwardResult",
    "ListenerBindFailed",
    "ListenerStarted",
    "ListenerStopped",
    "Outcome",
    "UnitReceived",
    # Engine
    "ConnectionHandler",
    "InboundUnit",
    "Listener",
    "ListenerState",
    "Replicator",
    "Supervisor",
    "TcpListener",
    "UdpListener",
    "resolve_address",
    "run",
]
