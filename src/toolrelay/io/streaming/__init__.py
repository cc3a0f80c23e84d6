"""Streaming I/O: orjson codec with repair, and SSE decoding.

Example:
    >>> from toolrelay.io.streaming import aiter_sse, parse_lenient
    >>> async for event in aiter_sse(response.aiter_lines()):
    ...     payload = parse_lenient(event.data)
"""

from .codec import PARSE_ERROR_CODE, ParseFailure, decode, encode, encode_str, parse_lenient, repair_json
from .sse import SSEDecoder, SSEEvent, aiter_sse

__all__ = [
    # Codec
    "encode", "decode", "encode_str", "repair_json", "parse_lenient", "ParseFailure", "PARSE_ERROR_CODE",
    # SSE
    "SSEEvent", "SSEDecoder", "aiter_sse",
]
