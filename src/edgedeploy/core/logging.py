"""Structured logging for edgedeploy.

Every record carries its key/value fields twice: rendered into the message
as ``message [key=value ...]`` for humans, and attached to the record as
``record.fields`` so :class:`JSONFormatter` can emit them as JSON lines.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "edgedeploy"

# Rendered first, in this order, when present.
LEADING_FIELDS = ("deployment_id", "phase", "target", "capability")


class LogLevel(str, Enum):
    """Log level enumeration."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def numeric(self) -> int:
        return getattr(logging, self.value.upper())


class JSONFormatter(logging.Formatter):
    """One JSON object per record, structured fields included."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": getattr(record, "event", record.getMessage()),
        }
        entry.update(getattr(record, "fields", {}))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    rich_output: bool = True,
    json_format: bool = False,
) -> logging.Logger:
    """Configure logging for edgedeploy.

    Args:
        level: The logging level
        rich_output: Whether to use Rich for formatted output
        json_format: Emit JSON lines instead; takes precedence over Rich

    Returns:
        The ``edgedeploy`` logger
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JSONFormatter())
    elif rich_output:
        handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root_logger.addHandler(handler)
    root_logger.setLevel(level.numeric)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.numeric)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``edgedeploy`` hierarchy."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def render_fields(fields: dict[str, Any]) -> str:
    """``key=value`` pairs, deployment coordinates first, None values dropped."""
    ordered = [k for k in LEADING_FIELDS if k in fields]
    ordered += [k for k in fields if k not in LEADING_FIELDS]
    parts = []
    for key in ordered:
        value = fields[key]
        if value is None:
            continue
        text = str(getattr(value, "value", value))
        if not text or " " in text:
            text = json.dumps(text)
        parts.append(f"{key}={text}")
    return " ".join(parts)


class StructuredLogger:
    """Logger carrying bound key/value context.

    ``logger.bind(deployment_id="rel-42").info("Phase done", phase="assess")``
    logs ``Phase done [deployment_id=rel-42 phase=assess]``.
    """

    def __init__(self, name: str, context: dict[str, Any] | None = None):
        self._logger = get_logger(name)
        self._context: dict[str, Any] = dict(context or {})

    @property
    def name(self) -> str:
        return self._logger.name

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Create a new logger with additional context."""
        return StructuredLogger(self._logger.name, {**self._context, **kwargs})

    def _log(self, level: int, message: str, fields: dict[str, Any], exc_info: bool = False) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self._context, **fields}
        rendered = render_fields(merged)
        self._logger.log(
            level,
            f"{message} [{rendered}]" if rendered else message,
            exc_info=exc_info,
            extra={"event": message, "fields": merged},
        )

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log an error with the active exception's traceback."""
        self._log(logging.ERROR, message, kwargs, exc_info=True)
