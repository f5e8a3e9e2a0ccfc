from __future__ import annotations

import socket
from pathlib import Path
from typing import Any

import pytest

from fanrelay.cli import build_parser, main


@pytest.fixture
def configure_calls(monkeypatch: pytest.MonkeyPatch) -> list[tuple[tuple[Any, ...], dict[str, Any]]]:
    calls: list[tuple[tuple[Any, ...], dict[str, Any]]] = []
    monkeypatch.setattr(
        "fanrelay.logger.configure", lambda *args, **kwargs: calls.append((args, kwargs))
    )
    return calls


def test_parser_defaults() -> None:
    args = build_parser().parse_args([])
    assert args.config is None
    assert args.log_level is None
    assert args.log_format is None


def test_parser_options() -> None:
    args = build_parser().parse_args(
        ["-c", "relay.toml", "--log-level", "DEBUG", "--log-format", "minimal"]
    )
    assert args.config == Path("relay.toml")
    assert args.log_level == "DEBUG"
    assert args.log_format == "minimal"


def test_parser_rejects_unknown_format() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--log-format", "json"])


def test_missing_config_exits_with_error(tmp_path: Path, configure_calls) -> None:
    assert main(["--config", str(tmp_path / "missing.toml")]) == 1
    assert len(configure_calls) == 1


def test_runs_until_every_listener_exits(tmp_path: Path, configure_calls) -> None:
    occupied = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    occupied.bind(("127.0.0.1", 0))
    port = occupied.getsockname()[1]
    config = tmp_path / "fanrelay.toml"
    config.write_text(
        f"""\
[logging]
level = "WARNING"

[[listeners]]
protocol = "udp"
listen_addr = "127.0.0.1:{port}"
targets = ["127.0.0.1:9"]
"""
    )
    try:
        code = main(["-c", str(config), "--log-format", "compact"])
    finally:
        occupied.close()

    assert code == 0
    ((args, kwargs),) = configure_calls
    assert args == ("WARNING",)
    assert kwargs == {"fmt": "compact", "colors": None}
