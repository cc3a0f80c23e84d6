"""JSON-RPC 2.0 envelopes and MCP request builders.

Envelopes are frozen pydantic models. Serialization omits members that
were never set while keeping members explicitly set to ``null`` (a parse
error response carries ``"id": null``, a void result carries
``"result": null``).

Example:
    >>> req = make_request("tools/list", id=1)
    >>> serialize(req)
    b'{"jsonrpc":"2.0","id":1,"method":"tools/list"}'
    >>> deserialize(b'{"jsonrpc":"2.0","result":{},"id":1}').is_response
    True
    >>> deserialize(b"{nope").code == RpcErrorCode.PARSE_ERROR
    True
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Literal

import orjson
from pydantic import BaseModel, ConfigDict, ValidationError

from toolrelay.io.streaming.codec import ParseFailure

RpcId = str | int

PROTOCOL_VERSION = "2024-11-05"


class RpcErrorCode(IntEnum):
    """Standard JSON-RPC 2.0 error codes."""
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class RpcError(BaseModel):
    """JSON-RPC error object."""

    model_config = ConfigDict(frozen=True, extra="allow")

    code: int
    message: str
    data: Any = None


class Envelope(BaseModel):
    """One JSON-RPC 2.0 message: request, notification or response.

    Which members were supplied matters; use the predicates rather than
    testing fields against None.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    jsonrpc: Literal["2.0"] = "2.0"
    id: RpcId | None = None
    method: str | None = None
    params: dict[str, Any] | list[Any] | None = None
    result: Any = None
    error: RpcError | None = None

    @property
    def has_id(self) -> bool:
        return "id" in self.model_fields_set

    @property
    def is_request(self) -> bool:
        return self.method is not None and self.has_id

    @property
    def is_notification(self) -> bool:
        return self.method is not None and not self.has_id

    @property
    def is_response(self) -> bool:
        return self.method is None and ("result" in self.model_fields_set or self.error is not None)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return {"jsonrpc": "2.0", **self.model_dump(mode="json", exclude_unset=True, exclude={"jsonrpc"})}


# ─────────────────────────────────────────────────────────────────────────────
# Builders
# ─────────────────────────────────────────────────────────────────────────────

def make_request(method: str, params: dict[str, Any] | list[Any] | None = None, id: RpcId | None = None) -> Envelope:  # noqa: A002
    """Request envelope; without an id it is a notification."""
    fields: dict[str, Any] = {"method": method}
    if params is not None:
        fields["params"] = params
    if id is not None:
        fields["id"] = id
    return Envelope(**fields)


def make_success(result: Any, id: RpcId | None) -> Envelope:  # noqa: A002
    return Envelope(result=result, id=id)


def make_error(code: int, message: str, id: RpcId | None = None, data: Any = None) -> Envelope:  # noqa: A002
    error = RpcError(code=code, message=message) if data is None else RpcError(code=code, message=message, data=data)
    return Envelope(error=error, id=id)


# ─────────────────────────────────────────────────────────────────────────────
# Wire format
# ─────────────────────────────────────────────────────────────────────────────

def serialize(envelope: Envelope) -> bytes:
    return orjson.dumps(envelope.to_dict())


def _invalid(message: str, text: str) -> ParseFailure:
    return ParseFailure(message, code=RpcErrorCode.INVALID_REQUEST, text=text)


def deserialize(raw: bytes | str) -> Envelope | ParseFailure:
    """Decode one message. Never raises: bad input yields a ParseFailure."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError as e:
        return ParseFailure(f"Parse error: {e}", code=RpcErrorCode.PARSE_ERROR, text=text)

    if isinstance(data, list):
        return _invalid("Batch messages are not supported", text)
    if not isinstance(data, dict):
        return _invalid("Message must be a JSON object", text)
    if data.get("jsonrpc") != "2.0":
        return _invalid("Missing or unsupported jsonrpc version", text)
    if "method" not in data and "result" not in data and "error" not in data:
        return _invalid("Message has neither method nor result/error", text)
    if "result" in data and "error" in data:
        return _invalid("Response carries both result and error", text)
    try:
        return Envelope.model_validate(data)
    except ValidationError as e:
        return _invalid(f"Invalid envelope: {e.error_count()} validation error(s)", text)


# ─────────────────────────────────────────────────────────────────────────────
# MCP helpers
# ─────────────────────────────────────────────────────────────────────────────

def initialize_request(
    client_info: dict[str, str],
    capabilities: dict[str, Any] | None = None,
    id: RpcId = 1,  # noqa: A002
    protocol_version: str = PROTOCOL_VERSION,
) -> Envelope:
    return make_request(
        "initialize",
        {"protocolVersion": protocol_version, "clientInfo": client_info, "capabilities": capabilities or {}},
        id,
    )


def initialized_notification() -> Envelope:
    return make_request("notifications/initialized")


def tools_list_request(id: RpcId) -> Envelope:  # noqa: A002
    return make_request("tools/list", id=id)


def tools_call_request(name: str, arguments: dict[str, Any] | None, id: RpcId) -> Envelope:  # noqa: A002
    return make_request("tools/call", {"name": name, "arguments": arguments or {}}, id)


def resources_list_request(id: RpcId) -> Envelope:  # noqa: A002
    return make_request("resources/list", id=id)


def resources_read_request(uri: str, id: RpcId) -> Envelope:  # noqa: A002
    return make_request("resources/read", {"uri": uri}, id)
