"""Error taxonomy for transport and routing failures.

Provides error codes, the structured FatalError model surfaced by the
executors, and exception wrappers raised by clients and the router.
Uses Pydantic for validation and serialization.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache
from typing import Annotated, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

# Bodies attached to errors are truncated to keep logs and agent feedback bounded
DEFAULT_BODY_LIMIT = 500


class ErrorCode(StrEnum):
    """Machine-readable failure classification.

    Drives retry decisions in the executors and lets callers branch on
    the kind of failure without parsing messages.
    """
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    STREAM_ABORTED = "STREAM_ABORTED"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAVAILABLE = "UNAVAILABLE"
    UNKNOWN = "UNKNOWN"


# Transient failures worth another attempt
RETRYABLE_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.RATE_LIMITED,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.TIMEOUT,
    ErrorCode.SERVER_ERROR,
})

# Ordered pattern -> code mapping, first match wins
_PATTERN_CODES: dict[str, ErrorCode] = {
    "timeout": ErrorCode.TIMEOUT,
    "connect": ErrorCode.NETWORK_ERROR,
    "network": ErrorCode.NETWORK_ERROR,
    "reset": ErrorCode.NETWORK_ERROR,
    "pipe": ErrorCode.NETWORK_ERROR,
    "rate limit": ErrorCode.RATE_LIMITED,
    "ratelimit": ErrorCode.RATE_LIMITED,
    "json": ErrorCode.PARSE_ERROR,
    "decode": ErrorCode.PARSE_ERROR,
    "parse": ErrorCode.PARSE_ERROR,
}


@lru_cache(maxsize=256)
def _classify_cached(exc_key: str) -> ErrorCode:
    haystack = exc_key.lower()
    return next((code for pattern, code in _PATTERN_CODES.items() if pattern in haystack), ErrorCode.UNKNOWN)


def classify_exception(exc: BaseException) -> ErrorCode:
    """Map exception to error code via pattern matching on name/message."""
    return _classify_cached(f"{type(exc).__name__} {exc}")


def truncate(text: str | None, limit: int = DEFAULT_BODY_LIMIT) -> str | None:
    """Clip diagnostic text, marking how much was cut."""
    if text is None or len(text) <= limit:
        return text
    return f"{text[:limit]}... [{len(text) - limit} more chars]"


class FatalError(BaseModel):
    """Terminal failure of a transport call after all recovery was exhausted.

    Attributes:
        message: Human-readable summary
        code: Machine-readable classification
        url: Target of the failed call
        status: Last HTTP status seen, if any response arrived
        body: Truncated response body for diagnostics
        cause: Text of the underlying exception for transport failures
        attempts: Number of attempts made before giving up
    """

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        json_schema_extra={
            "title": "Fatal Error",
            "examples": [{
                "message": "API request failed with status 503",
                "code": "SERVER_ERROR",
                "url": "https://api.example.com/v1/chat",
                "status": 503,
                "attempts": 3,
            }],
        },
    )

    message: Annotated[str, Field(min_length=1)]
    code: ErrorCode = ErrorCode.UNKNOWN
    url: str | None = None
    status: int | None = None
    body: str | None = Field(default=None, repr=False)
    cause: str | None = None
    attempts: Annotated[int, Field(ge=0)] = 1

    @field_validator("body", mode="before")
    @classmethod
    def _decode_body(cls, v: str | bytes | None) -> str | None:
        return v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v

    @computed_field
    @property
    def is_retryable(self) -> bool:
        """Whether the underlying condition is typically transient."""
        return self.code in RETRYABLE_CODES

    @classmethod
    def from_exception(cls, exc: BaseException, *, url: str | None = None, attempts: int = 1, context: str = "") -> Self:
        """Wrap a transport exception, classifying it automatically."""
        detail = str(exc) or type(exc).__name__
        return cls(
            message=f"{context}: {detail}" if context else detail,
            code=classify_exception(exc),
            url=url,
            cause=f"{type(exc).__name__}: {exc}",
            attempts=attempts,
        )

    def render(self) -> str:
        """Format for logs and agent feedback."""
        parts = [f"{self.message} [{self.code}]"]
        if self.url:
            parts.append(f"URL: {self.url}")
        if self.status is not None:
            parts.append(f"Status: {self.status}")
        if self.cause:
            parts.append(f"Cause: {self.cause}")
        if self.body:
            parts.append(f"Body: {self.body}")
        return "\n".join(parts)

    __str__ = render


class RelayException(Exception):
    """Exception wrapping a FatalError for raising."""

    def __init__(self, error: FatalError) -> None:
        self.error = error
        super().__init__(error.message)

    @property
    def code(self) -> ErrorCode:
        return self.error.code

    @classmethod
    def create(cls, message: str, code: ErrorCode = ErrorCode.UNKNOWN, **fields: object) -> Self:
        return cls(FatalError(message=message, code=code, **fields))


class TransportException(RelayException):
    """A pipe, socket or HTTP transport could not carry a message."""


class ProtocolError(RelayException):
    """A backend answered with a JSON-RPC error object or an unusable envelope."""

    def __init__(self, error: FatalError, *, rpc_code: int | None = None, data: object = None) -> None:
        super().__init__(error)
        self.rpc_code = rpc_code
        self.data = data

    @classmethod
    def from_rpc(cls, rpc_code: int, message: str, data: object = None, *, context: str = "") -> Self:
        text = f"{context}: {message}" if context else message
        return cls(FatalError(message=text or "RPC error", code=ErrorCode.PROTOCOL_ERROR), rpc_code=rpc_code, data=data)


class RoutingError(RelayException):
    """A routed call could not be dispatched. Fatal only to that call."""


class ToolNotFoundError(RoutingError):
    """No live descriptor is registered under the requested tool name."""

    @classmethod
    def for_tool(cls, name: str) -> Self:
        return cls(FatalError(message=f"Tool not found: {name}", code=ErrorCode.NOT_FOUND))


class ClientUnavailableError(RoutingError):
    """The owning client is gone or no longer alive."""

    @classmethod
    def for_client(cls, client: str, tool: str) -> Self:
        return cls(FatalError(
            message=f"Client '{client}' is not available for tool '{tool}'",
            code=ErrorCode.UNAVAILABLE,
        ))
