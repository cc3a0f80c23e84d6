"""Toolrelay - Resilient transport and tool routing for LLM agents.

Turns unreliable calls to model and tool services into dependable
request/response and streaming operations, and aggregates the tools of
several MCP backends into one routed capability surface.

Unary Calls (retry, backoff, lenient parsing):
    >>> from toolrelay import RequestExecutor, RetryPolicy
    >>>
    >>> async with RequestExecutor() as executor:
    ...     result = await executor.execute(
    ...         "https://api.example.com/v1/chat",
    ...         {"Authorization": f"Bearer {key}"},
    ...         {"model": "m", "messages": messages},
    ...         RetryPolicy(max_attempts=5),
    ...     )
    >>> if result.is_err():
    ...     print(result.unwrap_err().render())

Streaming (SSE with [DONE] sentinel and circuit breaker):
    >>> from toolrelay import StreamExecutor
    >>>
    >>> async def on_event(event, done):
    ...     if not done:
    ...         print(event["choices"][0]["delta"])
    >>>
    >>> async with StreamExecutor() as executor:
    ...     summary = (await executor.stream(url, headers, body, on_event)).unwrap()

Tool Routing:
    >>> from toolrelay import EndpointDiscovery, StdioTransport, ToolRouter
    >>>
    >>> async with ToolRouter() as router:
    ...     await router.connect("github", StdioTransport("npx", ["-y", "@modelcontextprotocol/server-github"]))
    ...     for endpoint in await EndpointDiscovery().scan():
    ...         await router.connect_endpoint(endpoint)
    ...     specs = router.tool_specs()          # hand to the model
    ...     result = await router.call_tool("search_repositories", {"query": "httpx"})

Configuration:
    All defaults come from TOOLRELAY_* environment variables (or .env),
    see toolrelay.foundation.config.
"""

from __future__ import annotations

__version__ = "0.1.0"

# Foundation
from .foundation.config import RelaySettings, clear_settings_cache, get_settings
from .foundation.errors import (
    ClientUnavailableError,
    Err,
    ErrorCode,
    FatalError,
    Ok,
    ProtocolError,
    RelayException,
    Result,
    RoutingError,
    ToolNotFoundError,
    TransportException,
)

# I/O
from .io.streaming import ParseFailure, parse_lenient, repair_json

# MCP
from .mcp import (
    Capabilities,
    ClientState,
    Endpoint,
    EndpointDiscovery,
    Envelope,
    HttpTransport,
    RoutedTool,
    RouterStatus,
    SseTransport,
    StdioTransport,
    ToolClient,
    ToolDescriptor,
    ToolRouter,
    Transport,
    extract_text,
)

# Runtime
from .runtime import CircuitBreaker, ExponentialBackoff, RetryPolicy, configure_logging

# Transport
from .transport import HttpResponse, RawPayload, RequestExecutor, StreamExecutor, StreamSummary

__all__ = [
    "__version__",
    # Foundation
    "RelaySettings", "get_settings", "clear_settings_cache",
    "ErrorCode", "FatalError", "RelayException", "TransportException", "ProtocolError",
    "RoutingError", "ToolNotFoundError", "ClientUnavailableError",
    "Result", "Ok", "Err",
    # I/O
    "repair_json", "parse_lenient", "ParseFailure",
    # Runtime
    "RetryPolicy", "ExponentialBackoff", "CircuitBreaker", "configure_logging",
    # Transport
    "RequestExecutor", "HttpResponse", "RawPayload", "StreamExecutor", "StreamSummary",
    # MCP
    "Envelope", "Transport", "StdioTransport", "HttpTransport", "SseTransport",
    "ToolClient", "extract_text",
    "ToolRouter", "ToolDescriptor", "RoutedTool", "ClientState", "RouterStatus",
    "EndpointDiscovery", "Endpoint", "Capabilities",
]
