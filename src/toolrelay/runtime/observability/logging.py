"""Logging setup for toolrelay.

Every module logs through a stdlib logger under the ``toolrelay``
namespace (``toolrelay.http``, ``toolrelay.stream``, ``toolrelay.router``,
...). Nothing is emitted until the host application configures handlers;
``configure_logging`` is a convenience for applications that want the
library's own console or JSON-lines output.

Quick Start:
    >>> from toolrelay.runtime.observability import configure_logging
    >>> configure_logging()                      # from TOOLRELAY_LOG_* settings
    >>> configure_logging(format="json", level="DEBUG")
"""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TextIO

import orjson

if TYPE_CHECKING:
    from toolrelay.foundation.config import LoggingSettings

ROOT_LOGGER = "toolrelay"

# LogRecord attributes that are not user-supplied `extra=` context
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

logging.getLogger(ROOT_LOGGER).addHandler(logging.NullHandler())


def _context(record: logging.LogRecord) -> dict[str, object]:
    return {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}


class ConsoleFormatter(logging.Formatter):
    """Human-readable output.

    Format: HH:MM:SS.mmm [level] logger: message key=value key2=value2
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC).strftime("%H:%M:%S.%f")[:-3]
        parts = [ts, f"[{record.levelname.lower()}]", f"{record.name}:", record.getMessage()]
        parts.extend(f"{k}={v!r}" for k, v in sorted(_context(record).items()))
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(logging.Formatter):
    """JSON Lines output for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
            **_context(record),
        }
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(data, default=str).decode()


_FORMATTERS: dict[str, type[logging.Formatter]] = {"text": ConsoleFormatter, "json": JsonFormatter}


def configure_logging(
    settings: LoggingSettings | None = None,
    *,
    format: str | None = None,  # noqa: A002 - matches settings field
    level: str | None = None,
    output: TextIO | None = None,
) -> logging.Handler:
    """Install a single handler on the ``toolrelay`` logger.

    Explicit arguments override values from settings. Calling again replaces
    the previously installed handler.

    Returns:
        The installed handler
    """
    if settings is None:
        from toolrelay.foundation.config import get_settings
        settings = get_settings().logging
    fmt = format or settings.format
    if fmt not in _FORMATTERS:
        raise ValueError(f"Unknown format: {fmt}. Use 'text' or 'json'")

    root = logging.getLogger(ROOT_LOGGER)
    for existing in [h for h in root.handlers if getattr(h, "_toolrelay", False)]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(output or sys.stderr)
    handler.setFormatter(_FORMATTERS[fmt]())
    handler._toolrelay = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel((level or settings.level).upper())
    return handler


def get_logger(name: str) -> logging.Logger:
    """Logger under the toolrelay namespace."""
    return logging.getLogger(name if name.startswith(ROOT_LOGGER) else f"{ROOT_LOGGER}.{name}")
