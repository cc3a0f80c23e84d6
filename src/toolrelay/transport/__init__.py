"""Resilient transport to model and tool services.

- RequestExecutor: unary JSON POST with retry, backoff and lenient parsing
- StreamExecutor: server-sent events with a consecutive-failure breaker
"""

from .http import HttpResponse, RawPayload, RequestExecutor, status_code_to_error
from .stream import OnEvent, StreamExecutor, StreamSummary

__all__ = [
    "RequestExecutor", "HttpResponse", "RawPayload", "status_code_to_error",
    "StreamExecutor", "StreamSummary", "OnEvent",
]
