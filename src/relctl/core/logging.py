"""Logging setup and key=value structured logger for relctl."""

import logging
import sys
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler


class LogLevel(str, Enum):
    """Levels selectable through ``global.verbosity`` and -v/-q."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


def setup_logging(
    level: LogLevel | str = LogLevel.INFO,
    rich_output: bool = True,
) -> logging.Logger:
    """Route relctl logs to stderr, leaving stdout for command output.

    Args:
        level: A LogLevel or its name
        rich_output: Render through Rich instead of plain timestamped lines

    Returns:
        The ``relctl`` package logger
    """
    if not isinstance(level, LogLevel):
        level = LogLevel(level.lower())
    log_level = getattr(logging, level.value.upper())

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if rich_output:
        handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s: %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )

    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    logger = logging.getLogger("relctl")
    logger.setLevel(log_level)

    # Webhook and slot host requests are logged by relctl itself
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    if name.startswith("relctl"):
        return logging.getLogger(name)
    return logging.getLogger(f"relctl.{name}")


def _render(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    text = str(value)
    if not text or any(c.isspace() for c in text):
        return f'"{text}"'
    return text


class StructuredLogger:
    """Logger that appends ``key=value`` context such as target and release ids.

    None values are left out so optional ids do not clutter the line.
    """

    def __init__(self, name: str):
        self._logger = get_logger(name)
        self._context: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Create a new logger with additional context."""
        new_logger = StructuredLogger(self._logger.name)
        new_logger._context = {**self._context, **kwargs}
        return new_logger

    def _format_message(self, message: str, **kwargs: Any) -> str:
        context = {k: v for k, v in {**self._context, **kwargs}.items() if v is not None}
        if not context:
            return message
        context_str = " ".join(f"{k}={_render(v)}" for k, v in context.items())
        return f"{message} [{context_str}]"

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(self._format_message(message, **kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(self._format_message(message, **kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(self._format_message(message, **kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(self._format_message(message, **kwargs))
