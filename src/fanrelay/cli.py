"""Command line entry point.

Usage:
    fanrelay --config fanrelay.toml
    fanrelay --config config.json --log-level DEBUG
    python -m fanrelay
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from fanrelay import logger as relay_logger
from fanrelay.config import RelayConfig, load_config
from fanrelay.errors import ConfigError
from fanrelay.supervisor import Supervisor

log = logging.getLogger("fanrelay.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fanrelay",
        description="Replicate inbound UDP datagrams and TCP streams to a set of targets.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="config file (.toml or .json); searched upwards from cwd when omitted",
    )
    parser.add_argument("--log-level", default=None, help="override configured log level")
    parser.add_argument(
        "--log-format",
        choices=("verbose", "compact", "minimal"),
        default=None,
        help="override configured log format",
    )
    return parser


async def serve(config: RelayConfig) -> None:
    """Run the supervisor until every listener exits or a stop signal arrives."""
    supervisor = Supervisor(config)
    loop = asyncio.get_running_loop()
    stopping: set[asyncio.Task[None]] = set()

    def request_stop(signame: str) -> None:
        log.info("Received %s, shutting down", signame)
        task = loop.create_task(supervisor.stop())
        stopping.add(task)
        task.add_done_callback(stopping.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop, sig.name)
        except NotImplementedError:
            pass

    await supervisor.run()
    if stopping:
        await asyncio.gather(*stopping)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        relay_logger.configure()
        log.critical("Failed to load configuration: %s", exc)
        return 1

    relay_logger.configure(
        args.log_level or config.logging.level,
        fmt=args.log_format or config.logging.format,
        colors=config.logging.colors,
    )
    if not config.listeners:
        log.warning("No listeners configured")

    asyncio.run(serve(config))
    return 0


if __name__ == "__main__":
    sys.exit(main())
