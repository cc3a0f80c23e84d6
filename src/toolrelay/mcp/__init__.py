"""MCP tool backends: protocol, transports, clients, routing and discovery.

Example:
    >>> from toolrelay.mcp import EndpointDiscovery, ToolRouter
    >>> discovery = EndpointDiscovery()
    >>> async with ToolRouter() as router:
    ...     for endpoint in await discovery.scan():
    ...         await router.connect_endpoint(endpoint)
    ...     tools = router.as_tools()
"""

from .client import ToolClient, extract_text
from .discovery import Capabilities, Endpoint, EndpointDiscovery
from .protocol import (
    PROTOCOL_VERSION,
    Envelope,
    RpcError,
    RpcErrorCode,
    deserialize,
    initialize_request,
    initialized_notification,
    make_error,
    make_request,
    make_success,
    resources_list_request,
    resources_read_request,
    serialize,
    tools_call_request,
    tools_list_request,
)
from .router import ClientState, ClientStatus, RoutedTool, RouterStatus, ToolDescriptor, ToolRouter
from .transports import HttpTransport, SseTransport, StdioTransport, Transport

__all__ = [
    # Protocol
    "Envelope", "RpcError", "RpcErrorCode", "PROTOCOL_VERSION",
    "make_request", "make_success", "make_error", "serialize", "deserialize",
    "initialize_request", "initialized_notification", "tools_list_request", "tools_call_request",
    "resources_list_request", "resources_read_request",
    # Transports
    "Transport", "StdioTransport", "HttpTransport", "SseTransport",
    # Client & routing
    "ToolClient", "extract_text",
    "ToolRouter", "ToolDescriptor", "RoutedTool", "ClientState", "ClientStatus", "RouterStatus",
    # Discovery
    "EndpointDiscovery", "Endpoint", "Capabilities",
]
