"""Unified error handling for toolrelay.

- ErrorCode: failure classification driving retry decisions
- FatalError: structured terminal failure returned by executors
- RelayException and subclasses: raised by clients and the router
- Result/Ok/Err: executor return type
"""

from typing import Any, Union

from .errors import (
    DEFAULT_BODY_LIMIT,
    RETRYABLE_CODES,
    ClientUnavailableError,
    ErrorCode,
    FatalError,
    ProtocolError,
    RelayException,
    RoutingError,
    ToolNotFoundError,
    TransportException,
    classify_exception,
    truncate,
)
from .result import Err, Ok, Result

JsonPrimitive = Union[str, int, float, bool, None]
JsonValue = Union[JsonPrimitive, list[Any], dict[str, Any]]
JsonDict = dict[str, Any]

__all__ = [
    "ErrorCode", "FatalError", "RETRYABLE_CODES", "DEFAULT_BODY_LIMIT", "classify_exception", "truncate",
    "RelayException", "TransportException", "ProtocolError",
    "RoutingError", "ToolNotFoundError", "ClientUnavailableError",
    "Result", "Ok", "Err",
    "JsonPrimitive", "JsonValue", "JsonDict",
]
