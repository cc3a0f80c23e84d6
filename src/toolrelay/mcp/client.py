"""Client for one MCP tool backend.

ToolClient speaks MCP over any Transport: it performs the ``initialize``
handshake, then issues ``tools/list``, ``tools/call`` and resource calls.
JSON-RPC error responses raise ProtocolError with the backend's code,
message and data.

Example:
    >>> async with ToolClient.stdio("npx", ["-y", "@modelcontextprotocol/server-github"]) as client:
    ...     tools = await client.list_tools()
    ...     result = await client.call_tool("search_repositories", {"query": "httpx"})
    ...     print(extract_text(result))
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Self

from toolrelay.foundation.config import McpSettings, get_settings
from toolrelay.foundation.errors import ErrorCode, FatalError, ProtocolError
from toolrelay.io.streaming import encode_str

from .protocol import (
    Envelope,
    initialize_request,
    initialized_notification,
    resources_list_request,
    resources_read_request,
    tools_call_request,
    tools_list_request,
)
from .transports import HttpTransport, SseTransport, StdioTransport, Transport

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger("toolrelay.mcp.client")


def extract_text(result: Any) -> str:
    """Join the text blocks of a ``tools/call`` result.

    Results without a ``content`` list are rendered as JSON.
    """
    if isinstance(result, dict) and isinstance(content := result.get("content"), list):
        return "\n".join(block.get("text", "") for block in content if isinstance(block, dict) and block.get("type") == "text")
    return encode_str(result)


class ToolClient:
    """MCP session over a single transport.

    Attributes:
        name: Identity used in logs and errors
        server_info: ``serverInfo`` from the initialize response
        capabilities: Server capabilities from the initialize response
        protocol_version: Version the server agreed to
    """

    def __init__(self, transport: Transport, *, name: str | None = None, settings: McpSettings | None = None) -> None:
        self.transport = transport
        self.name = name or repr(transport)
        self._settings = settings or get_settings().mcp
        self._ids = itertools.count(1)
        self._connected = False
        self.server_info: dict[str, Any] = {}
        self.capabilities: dict[str, Any] = {}
        self.protocol_version: str | None = None

    def __repr__(self) -> str:
        return f"ToolClient({self.name!r}, connected={self._connected})"

    # ─────────────────────────────────────────────────────────────────
    # Constructors
    # ─────────────────────────────────────────────────────────────────

    @classmethod
    def stdio(cls, command: str, args: Sequence[str] = (), env: Mapping[str, str] | None = None, **kwargs: Any) -> Self:
        return cls(StdioTransport(command, args, env), **kwargs)

    @classmethod
    def http(cls, url: str, headers: Mapping[str, str] | None = None, **kwargs: Any) -> Self:
        return cls(HttpTransport(url, headers), **kwargs)

    @classmethod
    def sse(cls, url: str, headers: Mapping[str, str] | None = None, **kwargs: Any) -> Self:
        return cls(SseTransport(url, headers), **kwargs)

    # ─────────────────────────────────────────────────────────────────
    # Session
    # ─────────────────────────────────────────────────────────────────

    async def connect(self) -> Self:
        """Start the transport and negotiate capabilities.

        The transport is closed again if the handshake fails.
        """
        await self.transport.start()
        try:
            result = await self._call_object(initialize_request(
                {"name": self._settings.client_name, "version": self._settings.client_version},
                {},
                next(self._ids),
                self._settings.protocol_version,
            ))
            self.server_info = result.get("serverInfo") or {}
            self.capabilities = result.get("capabilities") or {}
            self.protocol_version = result.get("protocolVersion", self._settings.protocol_version)
            await self.transport.notify(initialized_notification())
        except BaseException:
            await self.transport.close()
            raise
        self._connected = True
        logger.info(f"[{self.name}] Connected to {self.server_info.get('name', 'tool server')} (protocol {self.protocol_version})")
        return self

    def is_alive(self) -> bool:
        return self._connected and self.transport.is_alive()

    async def close(self) -> None:
        self._connected = False
        await self.transport.close()

    async def __aenter__(self) -> Self:
        return await self.connect()

    async def __aexit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None) -> None:
        await self.close()

    # ─────────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────────

    async def _call(self, request: Envelope) -> Any:
        response = await self.transport.request(request)
        if response.error is not None:
            err = response.error
            raise ProtocolError.from_rpc(err.code, err.message, err.data, context=f"[{self.name}] {request.method}")
        return response.result

    async def _call_object(self, request: Envelope) -> dict[str, Any]:
        result = await self._call(request)
        if not isinstance(result, dict):
            raise ProtocolError(FatalError(
                message=f"[{self.name}] {request.method} returned {type(result).__name__}, expected object",
                code=ErrorCode.PROTOCOL_ERROR,
            ))
        return result

    async def list_tools(self) -> list[dict[str, Any]]:
        """Tool definitions as the backend reports them right now."""
        return list((await self._call_object(tools_list_request(next(self._ids)))).get("tools") or [])

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None = None) -> Any:
        """Invoke a tool and return its result unmodified."""
        return await self._call(tools_call_request(name, dict(arguments or {}), next(self._ids)))

    async def list_resources(self) -> list[dict[str, Any]]:
        return list((await self._call_object(resources_list_request(next(self._ids)))).get("resources") or [])

    async def read_resource(self, uri: str) -> Any:
        return await self._call(resources_read_request(uri, next(self._ids)))
