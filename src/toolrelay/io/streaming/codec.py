"""JSON codec with repair for truncated or sloppy payloads.

orjson is the only JSON engine - no fallback to stdlib json. Model
and tool servers regularly emit JSON that is cut off mid-stream or written
by hand; ``repair_json`` closes what was left open so ``parse_lenient``
can recover the intended value.

Usage:
    >>> from toolrelay.io.streaming import encode, parse_lenient, repair_json
    >>> repair_json('{"name": "Gene')
    '{"name": "Gene"}'
    >>> parse_lenient('[1, 2, {"a":').unwrap()
    [1, 2, {'a': None}]
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import orjson

from toolrelay.foundation.errors import Err, Ok, Result

if TYPE_CHECKING:
    from toolrelay.foundation.errors import JsonValue
    from toolrelay.mcp.protocol import Envelope

# JSON-RPC code for unparseable input, mirrored by RpcErrorCode.PARSE_ERROR
PARSE_ERROR_CODE = -32700

_OPTS = orjson.OPT_SERIALIZE_NUMPY | orjson.OPT_UTC_Z
_CLOSERS = {"{": "}", "[": "]"}
_IDENT = re.compile(r"[A-Za-z_$][\w$-]*")


@dataclass(frozen=True, slots=True)
class ParseFailure:
    """A payload that could not be decoded, even after repair.

    Attributes:
        message: What went wrong
        code: JSON-RPC error code (parse error unless a structural check failed)
        text: The offending input, when available
    """

    message: str
    code: int = PARSE_ERROR_CODE
    text: str | None = None

    def to_envelope(self, id: str | int | None = None) -> Envelope:  # noqa: A002
        """Matching JSON-RPC error response."""
        from toolrelay.mcp.protocol import make_error
        return make_error(self.code, self.message, id)


# ═══════════════════════════════════════════════════════════════════════════════
# Direct Functions (hot path - no indirection)
# ═══════════════════════════════════════════════════════════════════════════════

def encode(data: JsonValue) -> bytes:
    """Encode to JSON bytes (orjson)."""
    return orjson.dumps(data, option=_OPTS)


def decode(data: bytes | str) -> JsonValue:
    """Decode from JSON bytes/str (orjson)."""
    return orjson.loads(data)


def encode_str(data: JsonValue) -> str:
    """Encode to JSON string (orjson)."""
    return orjson.dumps(data, option=_OPTS).decode()


# ═══════════════════════════════════════════════════════════════════════════════
# Repair
# ═══════════════════════════════════════════════════════════════════════════════

def _last_significant(out: list[str]) -> str | None:
    for chunk in reversed(out):
        if stripped := chunk.rstrip():
            return stripped[-1]
    return None


def _strip_trailing_comma(out: list[str]) -> None:
    k = len(out) - 1
    while k >= 0 and out[k].isspace():
        k -= 1
    if k >= 0 and out[k] == ",":
        del out[k]


def repair_json(text: str | bytes | None) -> str:
    """Best-effort repair of truncated or lightly malformed JSON.

    Single pass over the input tracking string/escape state and a stack of
    expected closers. Outside strings it quotes bare object keys, drops
    trailing commas and stray closers. At end of input it closes an open
    string, completes a dangling key or ``:`` with ``null`` and closes
    every open bracket in reverse order.

    Valid JSON is returned unchanged; empty input becomes ``"{}"``. The
    result is not guaranteed to parse (e.g. ``"not json"`` stays as is).
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    if not text or not text.strip():
        return "{}"
    try:
        orjson.loads(text)
        return text
    except orjson.JSONDecodeError:
        pass

    out: list[str] = []
    stack: list[str] = []
    in_string = escape = in_key = awaiting_colon = False
    i, n = 0, len(text)

    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
                awaiting_colon, in_key = in_key, False
            i += 1
            continue

        in_object = bool(stack) and stack[-1] == "}"
        if ch == '"':
            in_string = True
            in_key = in_object and _last_significant(out) in ("{", ",")
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                i += 1
                continue  # stray closer
            _strip_trailing_comma(out)
            stack.pop()
        elif ch == ":":
            awaiting_colon = False
        elif in_object and (m := _IDENT.match(text, i)) and _last_significant(out) in ("{", ","):
            j = m.end()
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] == ":":
                out.append(f'"{m.group()}"')
                i = m.end()
                continue
        out.append(ch)
        i += 1

    if in_string:
        if escape:
            out.pop()  # dangling backslash
        out.append('"')
        awaiting_colon = in_key
    _strip_trailing_comma(out)
    if awaiting_colon:
        out.append(":null")
    elif _last_significant(out) == ":":
        out.append("null")
    out.extend(reversed(stack))
    return "".join(out)


def parse_lenient(text: str | bytes | None) -> Result[JsonValue, ParseFailure]:
    """Strict parse, then one repair attempt. Never raises."""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    if not text or not text.strip():
        return Err(ParseFailure("Empty payload", text=text))
    try:
        return Ok(orjson.loads(text))
    except orjson.JSONDecodeError:
        pass
    try:
        return Ok(orjson.loads(repair_json(text)))
    except orjson.JSONDecodeError as e:
        return Err(ParseFailure(f"Unparseable JSON after repair: {e}", text=text))
