"""Tests for endpoint discovery: parsers, registry, port probing, capabilities."""

from __future__ import annotations

import asyncio
import socket
import sys

import httpx
import pytest

from toolrelay.foundation.config import DiscoverySettings
from toolrelay.mcp.discovery import (
    Capabilities,
    Endpoint,
    EndpointDiscovery,
    parse_avahi,
    parse_dns_sd_browse,
    parse_dns_sd_resolve,
)


def no_tools(_: str) -> None:
    return None


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ─────────────────────────────────────────────────────────────────────────────
# Endpoint model
# ─────────────────────────────────────────────────────────────────────────────


class TestEndpoint:
    def test_urls(self) -> None:
        sse = Endpoint(name="a", host="127.0.0.1", port=8080)
        http = Endpoint(name="b", host="10.0.0.2", port=9000, transport="http")
        custom = Endpoint(name="c", host="localhost", port=3000, path="events")
        assert sse.url == "http://127.0.0.1:8080/sse"
        assert http.url == "http://10.0.0.2:9000/mcp"
        assert custom.url == "http://localhost:3000/events"
        assert sse.key == "127.0.0.1:8080"

    def test_ipv6_bracketed(self) -> None:
        assert Endpoint(name="v6", host="::1", port=8000).base_url == "http://[::1]:8000"

    def test_port_range_validated(self) -> None:
        with pytest.raises(ValueError):
            Endpoint(name="bad", host="h", port=70000)


# ─────────────────────────────────────────────────────────────────────────────
# Tool output parsers
# ─────────────────────────────────────────────────────────────────────────────


DNS_SD_BROWSE = """\
Browsing for _mcp._tcp.local
DATE: ---Mon 01 Jan 2024---
12:00:00.000  ...STARTING...
Timestamp     A/R    Flags  if Domain               Service Type         Instance Name
12:00:00.100  Add        3   4 local.               _mcp._tcp.           GitHub Tools
12:00:00.101  Add        2   4 local.               _mcp._tcp.           files
12:00:00.102  Add        2   6 local.               _mcp._tcp.           files
12:00:00.200  Rmv        0   4 local.               _mcp._tcp.           gone
""".splitlines()

DNS_SD_RESOLVE = """\
Lookup files._mcp._tcp.local
DATE: ---Mon 01 Jan 2024---
12:00:01.000  ...STARTING...
12:00:01.100  files._mcp._tcp.local. can be reached at studio.local.:8765 (interface 4)
 path=/mcp transport=http
""".splitlines()

AVAHI = """\
+   eth0 IPv4 files                                          _mcp._tcp            local
=   eth0 IPv4 files                                          _mcp._tcp            local
   hostname = [studio.local]
   address = [192.168.1.20]
   port = [8765]
   txt = ["transport=http" "path=/rpc"]
=   eth0 IPv6 files                                          _mcp._tcp            local
   hostname = [studio.local]
   address = [192.168.1.20]
   port = [8765]
   txt = []
=   eth0 IPv4 github tools                                   _mcp._tcp            local
   hostname = [devbox.local]
   address = [192.168.1.30]
   port = [3000]
   txt = []
""".splitlines()


class TestParsers:
    def test_dns_sd_browse(self) -> None:
        assert parse_dns_sd_browse(DNS_SD_BROWSE) == ["GitHub Tools", "files"]

    def test_dns_sd_resolve(self) -> None:
        endpoint = parse_dns_sd_resolve("files", DNS_SD_RESOLVE)
        assert endpoint is not None
        assert (endpoint.name, endpoint.host, endpoint.port) == ("files", "studio.local", 8765)
        assert endpoint.transport == "http" and endpoint.path == "/mcp"

    def test_dns_sd_resolve_without_answer(self) -> None:
        assert parse_dns_sd_resolve("files", DNS_SD_RESOLVE[:3]) is None

    def test_avahi(self) -> None:
        endpoints = parse_avahi(AVAHI, "_mcp._tcp")
        assert [(e.name, e.host, e.port) for e in endpoints] == [
            ("files", "192.168.1.20", 8765),
            ("github tools", "192.168.1.30", 3000),
        ]
        assert endpoints[0].transport == "http" and endpoints[0].path == "/rpc"
        assert endpoints[1].transport == "sse"


# ─────────────────────────────────────────────────────────────────────────────
# Registry and scanning
# ─────────────────────────────────────────────────────────────────────────────


class TestRegistry:
    def test_register_get_forget(self) -> None:
        discovery = EndpointDiscovery(which=no_tools)
        endpoint = discovery.register("local", "127.0.0.1", 8765, {"tools": [{"name": "echo"}]}, transport="http")
        assert discovery.get("127.0.0.1", 8765) == endpoint
        assert endpoint.capabilities is not None and endpoint.capabilities.tools == [{"name": "echo"}]
        assert discovery.list_endpoints() == [endpoint]
        assert discovery.forget("127.0.0.1", 8765)
        assert not discovery.forget("127.0.0.1", 8765)
        assert discovery.get("127.0.0.1", 8765) is None

    def test_register_replaces_same_key(self) -> None:
        discovery = EndpointDiscovery(which=no_tools)
        discovery.register("old", "h", 1)
        discovery.register("new", "h", 1)
        assert [e.name for e in discovery.list_endpoints()] == ["new"]

    @pytest.mark.asyncio
    async def test_scan_closed_ports_is_empty(self) -> None:
        settings = DiscoverySettings(probe_ports=[free_port()], probe_timeout=0.5)
        assert await EndpointDiscovery(settings, which=no_tools).scan(timeout=1) == []

    @pytest.mark.asyncio
    async def test_scan_finds_listening_port(self) -> None:
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            discovery = EndpointDiscovery(DiscoverySettings(probe_ports=[free_port(), port], probe_timeout=0.5), which=no_tools)
            found = await discovery.scan(timeout=1)
        finally:
            server.close()
            await server.wait_closed()
        assert [(e.name, e.port, e.transport) for e in found] == [(f"localhost:{port}", port, "sse")]
        assert discovery.get("127.0.0.1", port) is not None

    @pytest.mark.asyncio
    async def test_scan_never_raises(self) -> None:
        def broken_which(_: str) -> str | None:
            raise OSError("no PATH")

        assert await EndpointDiscovery(which=broken_which).scan(timeout=0.1) == []

    @pytest.mark.asyncio
    async def test_missing_tool_binary_yields_nothing(self) -> None:
        discovery = EndpointDiscovery(which=no_tools)
        assert await discovery._run_for(["/nonexistent/avahi-browse", "-t", "-r", "_mcp._tcp"], 0.5) == []

    @pytest.mark.asyncio
    async def test_run_for_collects_until_exit(self) -> None:
        discovery = EndpointDiscovery(which=no_tools)
        lines = await discovery._run_for([sys.executable, "-c", "print('one'); print('two')"], 5.0)
        assert lines == ["one", "two"]


# ─────────────────────────────────────────────────────────────────────────────
# Capabilities
# ─────────────────────────────────────────────────────────────────────────────


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_query_success_updates_registry(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"tools": [{"name": "echo"}], "resources": [], "extra": 1})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            discovery = EndpointDiscovery(client=client, which=no_tools)
            discovery.register("local", "127.0.0.1", 8765)
            caps = await discovery.query_capabilities("127.0.0.1", 8765)

        assert seen == ["http://127.0.0.1:8765/capabilities"]
        assert caps.tools == [{"name": "echo"}] and not caps.is_empty
        registered = discovery.get("127.0.0.1", 8765)
        assert registered is not None and registered.capabilities == caps

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=["not", "an", "object"]),
    ])
    async def test_query_failure_is_empty(self, response: httpx.Response) -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda _: response)) as client:
            caps = await EndpointDiscovery(client=client, which=no_tools).query_capabilities("127.0.0.1", 1)
        assert caps == Capabilities()
        assert caps.is_empty

    @pytest.mark.asyncio
    async def test_query_unreachable_is_empty(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            caps = await EndpointDiscovery(client=client, which=no_tools).query_capabilities("127.0.0.1", 1)
        assert caps.is_empty
