"""Console log formatting for the ``fanrelay`` logger hierarchy.

Library modules only create named loggers; nothing is installed until
``configure()`` is called (the command line does this).
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import IO, Protocol


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"


class FormatterFn(Protocol):
    def __call__(
        self,
        *,
        time: datetime,
        level: int,
        location: str,
        message: str,
    ) -> str: ...


_use_colors: bool = sys.stderr.isatty()


def _color(text: str, *codes: str) -> str:
    if not _use_colors:
        return text
    return f"{''.join(codes)}{text}{Colors.RESET}"


def _format_level(level: int) -> str:
    match level:
        case logging.DEBUG:
            return _color("[DEBUG]", Colors.MAGENTA)
        case logging.INFO:
            return _color("[INFO]", Colors.CYAN)
        case logging.WARNING:
            return _color("[WARN]", Colors.YELLOW, Colors.BOLD)
        case _ if level >= logging.ERROR:
            return _color("[ERROR]", Colors.RED, Colors.BOLD)
        case _:
            return f"[{logging.getLevelName(level)}]"


class formatters:
    @staticmethod
    def verbose(*, time: datetime, level: int, location: str, message: str) -> str:
        time_str = _color(time.strftime("%H:%M:%S.%f")[:-3], Colors.DIM)
        loc = _color(location, Colors.BLUE)
        if level >= logging.ERROR:
            message = _color(message, Colors.RED)
        elif level == logging.WARNING:
            message = _color(message, Colors.YELLOW)
        return f"{time_str} {_format_level(level)} {loc} {message}"

    @staticmethod
    def compact(*, time: datetime, level: int, location: str, message: str) -> str:
        del location
        time_str = _color(time.strftime("%H:%M:%S"), Colors.DIM)
        return f"{time_str} {_format_level(level)} {message}"

    @staticmethod
    def minimal(*, time: datetime, level: int, location: str, message: str) -> str:
        del time, location
        return f"{_format_level(level)} {message}"


class RelayFormatter(logging.Formatter):
    def __init__(self, fn: FormatterFn = formatters.verbose) -> None:
        super().__init__()
        self._fn = fn

    def format(self, record: logging.LogRecord) -> str:
        text = self._fn(
            time=datetime.fromtimestamp(record.created),
            level=record.levelno,
            location=f"{record.name}:{record.lineno}",
            message=record.getMessage(),
        )
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


def set_colors(enabled: bool) -> None:
    global _use_colors
    _use_colors = enabled


def configure(
    level: int | str = logging.INFO,
    *,
    fmt: str = "verbose",
    colors: bool | None = None,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Install a console handler on the ``fanrelay`` logger.

    Parameters
    ----------
    level : int | str
        Threshold, e.g. ``"DEBUG"`` or ``logging.INFO``.
    fmt : str
        One of ``"verbose"``, ``"compact"``, ``"minimal"``.
    colors : bool | None
        Force ANSI colors on or off; ``None`` detects a TTY.
    stream : IO[str] | None
        Destination, stderr by default.

    Raises
    ------
    ValueError
        On an unknown format or level name.
    """
    fn = getattr(formatters, fmt, None)
    if fn is None:
        msg = f"Unknown log format: {fmt}"
        raise ValueError(msg)
    if colors is not None:
        set_colors(colors)

    root = logging.getLogger("fanrelay")
    root.setLevel(level.upper() if isinstance(level, str) else level)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(RelayFormatter(fn))
    root.addHandler(handler)
    root.propagate = False
    return root
