"""Aggregates tools from several MCP backends into one capability surface.

ToolRouter owns its ToolClients and keeps a routing table of
ToolDescriptors, each pointing at exactly one client that was alive at the
last refresh.

Collision Rule:
    The first-registered client keeps the bare tool name; later clients
    exposing the same name get ``<client>_<tool>``. When that prefixed name
    is taken too, the tool is skipped with a warning. An assigned name
    sticks to its client while the client stays registered: removing the
    first client makes the bare name unresolvable rather than promoting
    the prefixed tool.

Concurrency:
    Writers (add, remove, refresh, close) serialize on an asyncio.Lock.
    Readers never lock: the table is a read-only mapping replaced wholesale
    after every rebuild, so a reader sees either the old or the new table.

Example:
    >>> router = ToolRouter()
    >>> await router.connect("github", StdioTransport("npx", ["-y", "@modelcontextprotocol/server-github"]))
    >>> await router.connect("files", StdioTransport("uvx", ["mcp-server-filesystem", "/tmp"]))
    >>> [spec["name"] for spec in router.tool_specs()]
    ['search_repositories', 'read_file', 'files_search_repositories']
    >>> await router.call_tool("read_file", {"path": "/tmp/notes.txt"})
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Self

from pydantic import BaseModel, ConfigDict, computed_field

from toolrelay.foundation.errors import ClientUnavailableError, ToolNotFoundError

from .client import ToolClient, extract_text
from .transports import HttpTransport, SseTransport, Transport

if TYPE_CHECKING:
    from types import TracebackType

    from .discovery import Endpoint

logger = logging.getLogger("toolrelay.router")


class ClientState(StrEnum):
    """Lifecycle of a client inside the router."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """One routable tool.

    Attributes:
        name: Name exposed by the router (possibly client-prefixed)
        original_name: Name the backend knows the tool by
        description: Human-readable description
        input_schema: JSON Schema of the arguments
        client: Name of the owning client
    """

    name: str
    original_name: str
    client: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({"type": "object", "properties": {}}))

    def to_spec(self) -> dict[str, Any]:
        """Flattened ``{name, description, parameters}`` for tool-calling loops."""
        return {"name": self.name, "description": self.description, "parameters": dict(self.input_schema)}


@dataclass(frozen=True, slots=True)
class RoutedTool:
    """A routed tool bound to its router; calls always go through routing."""

    descriptor: ToolDescriptor
    router: ToolRouter = field(repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def description(self) -> str:
        return self.descriptor.description

    @property
    def parameters(self) -> dict[str, Any]:
        return dict(self.descriptor.input_schema)

    async def call(self, arguments: Mapping[str, Any] | None = None) -> Any:
        return await self.router.call_tool(self.descriptor.name, arguments)

    async def call_text(self, arguments: Mapping[str, Any] | None = None) -> str:
        """Call and join the text content of the result."""
        return extract_text(await self.call(arguments))


class ClientStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    state: ClientState
    alive: bool
    tools: int


class RouterStatus(BaseModel):
    """Read-only snapshot of the router."""

    model_config = ConfigDict(frozen=True)

    total_tools: int
    clients: tuple[ClientStatus, ...] = ()

    @computed_field
    @property
    def total_clients(self) -> int:
        return len(self.clients)

    @computed_field
    @property
    def active_clients(self) -> int:
        return sum(c.alive for c in self.clients)


def _descriptor(tool: Mapping[str, Any], exposed: str, client: str) -> ToolDescriptor:
    schema = tool.get("inputSchema")
    return ToolDescriptor(
        name=exposed,
        original_name=tool["name"],
        client=client,
        description=tool.get("description") or "",
        input_schema=MappingProxyType(dict(schema)) if isinstance(schema, Mapping) else MappingProxyType({"type": "object", "properties": {}}),
    )


class ToolRouter:
    """Routes tool calls to the MCP backend that owns each tool."""

    def __init__(self) -> None:
        self._clients: dict[str, ToolClient] = {}  # registration order
        self._states: dict[str, ClientState] = {}
        self._table: Mapping[str, ToolDescriptor] = MappingProxyType({})
        self._names: dict[tuple[str, str], str] = {}  # (client, original) -> exposed
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"ToolRouter(clients={list(self._clients)}, tools={len(self._table)})"

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None) -> None:
        await self.close()

    # ─────────────────────────────────────────────────────────────────
    # Client management
    # ─────────────────────────────────────────────────────────────────

    async def add_client(self, name: str, client: ToolClient) -> ClientState:
        """Register a client, connecting it first if needed, and refresh.

        A client whose handshake fails stays registered as FAILED.

        Raises:
            ValueError: A client with this name is already registered
        """
        async with self._lock:
            if name in self._clients:
                raise ValueError(f"Client '{name}' is already registered")
            self._clients[name] = client
            self._states[name] = ClientState.CONNECTING
            if not client.is_alive():
                try:
                    await client.connect()
                except Exception as e:
                    logger.warning(f"Failed to connect client '{name}': {e}")
                    self._states[name] = ClientState.FAILED
            await self._rebuild()
            return self._states[name]

    async def connect(self, name: str, transport: Transport) -> ClientState:
        """Create a ToolClient over ``transport`` and add it."""
        return await self.add_client(name, ToolClient(transport, name=name))

    async def connect_endpoint(self, endpoint: Endpoint, headers: Mapping[str, str] | None = None) -> ClientState:
        """Add a client for a discovered or registered endpoint."""
        transport: Transport = (
            SseTransport(endpoint.url, headers) if endpoint.transport == "sse" else HttpTransport(endpoint.url, headers)
        )
        return await self.connect(endpoint.name, transport)

    async def remove_client(self, name: str) -> bool:
        """Close (best effort), drop and refresh. Returns False for unknown names."""
        async with self._lock:
            client = self._clients.pop(name, None)
            self._states.pop(name, None)
            if client is None:
                return False
            await self._close_quietly(name, client)
            await self._rebuild()
            return True

    async def refresh(self) -> None:
        """Re-query every live client and swap in a freshly built table."""
        async with self._lock:
            await self._rebuild()

    async def close(self) -> None:
        """Close every client and clear all state."""
        async with self._lock:
            clients, self._clients = self._clients, {}
            self._states.clear()
            self._names.clear()
            self._table = MappingProxyType({})
            for name, client in clients.items():
                await self._close_quietly(name, client)

    @staticmethod
    async def _close_quietly(name: str, client: ToolClient) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Error closing client '{name}': {e}")

    async def _rebuild(self) -> None:
        live: list[tuple[str, ToolClient]] = []
        for name, client in self._clients.items():
            if client.is_alive():
                live.append((name, client))
            elif self._states.get(name) != ClientState.FAILED:
                logger.warning(f"Client '{name}' is not alive, skipping")
                self._states[name] = ClientState.FAILED

        listings = await asyncio.gather(*(client.list_tools() for _, client in live), return_exceptions=True)

        tools: list[tuple[str, str, Mapping[str, Any]]] = []  # (client, original, raw) in registration order
        listed: set[str] = set()
        seen: set[tuple[str, str]] = set()
        for (name, client), listing in zip(live, listings):
            if isinstance(listing, BaseException):
                if not isinstance(listing, Exception):
                    raise listing
                logger.warning(f"Failed to get tools from '{name}': {listing}")
                if not client.is_alive():
                    self._states[name] = ClientState.FAILED
                continue
            self._states[name] = ClientState.CONNECTED
            listed.add(name)
            for tool in listing:
                original = tool.get("name") if isinstance(tool, Mapping) else None
                if not isinstance(original, str) or not original:
                    logger.warning(f"Client '{name}' reported a tool without a name, skipping")
                    continue
                if (name, original) in seen:
                    logger.warning(f"Client '{name}' listed tool '{original}' twice, skipping duplicate")
                    continue
                seen.add((name, original))
                tools.append((name, original, tool))

        names = self._assign_names(tools, listed)
        table = {names[(c, o)]: _descriptor(raw, names[(c, o)], c) for c, o, raw in tools if (c, o) in names}
        self._table = MappingProxyType(table)
        logger.debug(f"Routing table rebuilt: {len(table)} tool(s) from {len(listed)} live client(s)")

    def _assign_names(self, tools: list[tuple[str, str, Mapping[str, Any]]], listed: set[str]) -> dict[tuple[str, str], str]:
        """Exposed name per (client, tool).

        Names assigned earlier stick while their client stays registered, so
        a bare name freed by a removal is never promoted to another client.
        Names held by registered clients that could not be listed this round
        stay reserved.
        """
        previous = {k: v for k, v in self._names.items() if k[0] in self._clients}
        taken = {v for k, v in previous.items() if k[0] not in listed}
        assigned: dict[tuple[str, str], str] = {}

        for client, original, _ in tools:
            key = (client, original)
            if key in previous and key not in assigned:
                assigned[key] = previous[key]
                taken.add(previous[key])

        for client, original, _ in tools:
            key = (client, original)
            if key in assigned:
                continue
            exposed = original if original not in taken else f"{client}_{original}"
            if exposed in taken:
                logger.warning(f"Tool '{original}' from '{client}' collides with existing '{exposed}', skipping")
                continue
            assigned[key] = exposed
            taken.add(exposed)

        self._names = {**{k: v for k, v in previous.items() if k[0] not in listed}, **assigned}
        return assigned

    # ─────────────────────────────────────────────────────────────────
    # Routing (lock-free readers)
    # ─────────────────────────────────────────────────────────────────

    def resolve(self, name: str) -> ToolDescriptor | None:
        return self._table.get(name)

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None = None) -> Any:
        """Dispatch to the owning client and return its result unmodified.

        Raises:
            ToolNotFoundError: No tool is routed under ``name``
            ClientUnavailableError: The owning client is gone or not alive
        """
        descriptor = self._table.get(name)
        if descriptor is None:
            raise ToolNotFoundError.for_tool(name)
        client = self._clients.get(descriptor.client)
        if client is None or not client.is_alive():
            raise ClientUnavailableError.for_client(descriptor.client, name)
        return await client.call_tool(descriptor.original_name, arguments)

    def list_tools(self) -> list[ToolDescriptor]:
        return list(self._table.values())

    def tool_specs(self) -> list[dict[str, Any]]:
        return [d.to_spec() for d in self._table.values()]

    def as_tools(self) -> list[RoutedTool]:
        return [RoutedTool(d, self) for d in self._table.values()]

    @property
    def clients(self) -> list[str]:
        return list(self._clients)

    def state(self, name: str) -> ClientState:
        return self._states.get(name, ClientState.DISCONNECTED)

    async def negotiate(self, client_name: str) -> dict[str, Any] | None:
        """Server info, capabilities and live tool list of one client."""
        if (client := self._clients.get(client_name)) is None:
            return None
        return {
            "name": client_name,
            "server_info": client.server_info,
            "capabilities": client.capabilities,
            "protocol_version": client.protocol_version,
            "tools": await client.list_tools(),
        }

    def status(self) -> RouterStatus:
        """Snapshot from current state; performs no I/O."""
        table = self._table
        counts: dict[str, int] = {}
        for d in table.values():
            counts[d.client] = counts.get(d.client, 0) + 1
        return RouterStatus(
            total_tools=len(table),
            clients=tuple(
                ClientStatus(name=name, state=self.state(name), alive=client.is_alive(), tools=counts.get(name, 0))
                for name, client in self._clients.items()
            ),
        )
