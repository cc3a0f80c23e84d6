"""Observability: logging setup."""

from .logging import ROOT_LOGGER, ConsoleFormatter, JsonFormatter, configure_logging, get_logger

__all__ = ["ROOT_LOGGER", "ConsoleFormatter", "JsonFormatter", "configure_logging", "get_logger"]
