"""Tests for ToolClient over stdio, HTTP and SSE transports."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx
import orjson
import pytest

from toolrelay.foundation.errors import ErrorCode, ProtocolError, TransportException
from toolrelay.mcp import HttpTransport, SseTransport, StdioTransport, ToolClient, extract_text
from toolrelay.mcp.protocol import Envelope, make_success
from toolrelay.runtime.retry import NO_RETRY
from toolrelay.transport import RequestExecutor

FAKE_SERVER = str(Path(__file__).with_name("fake_server.py"))


def stdio_client(timeout: float = 10.0) -> ToolClient:
    return ToolClient(StdioTransport(sys.executable, [FAKE_SERVER], timeout=timeout), name="fake")


def answer(message: dict[str, Any]) -> dict[str, Any] | None:
    """In-process JSON-RPC backend shared by the HTTP and SSE fakes."""
    if "id" not in message:
        return None
    id_, params = message["id"], message.get("params") or {}
    match message["method"]:
        case "initialize":
            result: Any = {"protocolVersion": "2024-11-05", "serverInfo": {"name": "remote"}, "capabilities": {"tools": {}}}
        case "tools/list":
            result = {"tools": [{"name": "echo", "inputSchema": {"type": "object"}}]}
        case "tools/call":
            result = {"content": [{"type": "text", "text": params["arguments"].get("text", "")}]}
        case _:
            return {"jsonrpc": "2.0", "id": id_, "error": {"code": -32601, "message": "Method not found"}}
    return {"jsonrpc": "2.0", "id": id_, "result": result}


# ─────────────────────────────────────────────────────────────────────────────
# stdio
# ─────────────────────────────────────────────────────────────────────────────


class TestStdio:
    @pytest.mark.asyncio
    async def test_handshake_and_tools(self) -> None:
        async with stdio_client() as client:
            assert client.is_alive()
            assert client.server_info["name"] == "fake-server"
            assert client.protocol_version == "2024-11-05"
            assert "tools" in client.capabilities
            tools = await client.list_tools()
            assert [t["name"] for t in tools] == ["echo", "add", "fail", "slow", "crash"]
            assert extract_text(await client.call_tool("echo", {"text": "hi"})) == "hi"
            assert extract_text(await client.call_tool("add", {"a": 2, "b": 3})) == "5"
        assert not client.is_alive()

    @pytest.mark.asyncio
    async def test_resources(self) -> None:
        async with stdio_client() as client:
            resources = await client.list_resources()
            assert resources[0]["uri"] == "memo://notes"
            contents = await client.read_resource("memo://notes")
            assert contents["contents"][0]["text"] == "remember the milk"

    @pytest.mark.asyncio
    async def test_tool_error_raises_protocol_error(self) -> None:
        async with stdio_client() as client:
            with pytest.raises(ProtocolError) as exc_info:
                await client.call_tool("fail")
            assert exc_info.value.rpc_code == -32000
            assert exc_info.value.data == {"tool": "fail"}
            assert exc_info.value.code == ErrorCode.PROTOCOL_ERROR
            assert "Tool failed on purpose" in str(exc_info.value)
            # session stays usable
            assert extract_text(await client.call_tool("echo", {"text": "still here"})) == "still here"

    @pytest.mark.asyncio
    async def test_timeout_then_late_response_skipped(self) -> None:
        async with stdio_client(timeout=0.3) as client:
            with pytest.raises(TransportException) as exc_info:
                await client.call_tool("slow", {"seconds": 1})
            assert exc_info.value.code == ErrorCode.TIMEOUT
            client.transport.timeout = 10.0
            assert extract_text(await client.call_tool("echo", {"text": "after"})) == "after"

    @pytest.mark.asyncio
    async def test_server_exit_marks_client_dead(self) -> None:
        client = await stdio_client().connect()
        try:
            with pytest.raises(TransportException) as exc_info:
                await client.call_tool("crash")
            assert exc_info.value.code == ErrorCode.NETWORK_ERROR
            async with asyncio.timeout(5):
                while client.is_alive():
                    await asyncio.sleep(0.05)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_missing_command_unavailable(self) -> None:
        client = ToolClient(StdioTransport("/nonexistent/tool-server"))
        with pytest.raises(TransportException) as exc_info:
            await client.connect()
        assert exc_info.value.code == ErrorCode.UNAVAILABLE
        assert not client.is_alive()

    @pytest.mark.asyncio
    async def test_env_passed_to_child(self) -> None:
        transport = StdioTransport(
            sys.executable,
            ["-c", "import os, sys; sys.stdout.write(os.environ['TOOLRELAY_PROBE'] + '\\n'); sys.stdout.flush(); sys.stdin.read()"],
            env={"TOOLRELAY_PROBE": "seen"},
        )
        await transport.start()
        try:
            assert transport._process is not None and transport._process.stdout is not None
            assert (await transport._process.stdout.readline()).strip() == b"seen"
        finally:
            await transport.close()
        assert not transport.is_alive()


# ─────────────────────────────────────────────────────────────────────────────
# In-memory transport
# ─────────────────────────────────────────────────────────────────────────────


class TestSession:
    @pytest.mark.asyncio
    async def test_initialized_notification_sent(self, make_transport) -> None:
        transport = make_transport("a", ["x"])
        client = await ToolClient(transport, name="a").connect()
        assert transport.notifications == ["notifications/initialized"]
        assert client.server_info == {"name": "a", "version": "1.0"}
        await client.call_tool("x", {"k": 1})
        assert transport.calls == [{"name": "x", "arguments": {"k": 1}}]

    @pytest.mark.asyncio
    async def test_failed_handshake_closes_transport(self, make_transport) -> None:
        class Refusing(make_transport):
            async def request(self, message: Envelope) -> Envelope:
                if message.method == "initialize":
                    return make_success("not an object", message.id)
                return await super().request(message)

        transport = Refusing("a", [])
        with pytest.raises(ProtocolError, match="expected object"):
            await ToolClient(transport).connect()
        assert transport.closed

    @pytest.mark.asyncio
    async def test_unknown_method_error(self, make_transport) -> None:
        client = await ToolClient(make_transport("a", []), name="a").connect()
        with pytest.raises(ProtocolError) as exc_info:
            await client.list_resources()
        assert exc_info.value.rpc_code == -32601


class TestExtractText:
    def test_joins_text_blocks(self) -> None:
        result = {"content": [{"type": "text", "text": "a"}, {"type": "image", "data": "..."}, {"type": "text", "text": "b"}]}
        assert extract_text(result) == "a\nb"

    def test_non_content_rendered_as_json(self) -> None:
        assert extract_text({"value": 1}) == '{"value":1}'
        assert extract_text(None) == "null"


# ─────────────────────────────────────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────────────────────────────────────


def http_backend(request: httpx.Request) -> httpx.Response:
    reply = answer(orjson.loads(request.content))
    return httpx.Response(202) if reply is None else httpx.Response(200, json=reply)


class TestHttp:
    @pytest.mark.asyncio
    async def test_session_over_http(self, sleeps) -> None:
        executor = RequestExecutor(httpx.AsyncClient(transport=httpx.MockTransport(http_backend)), sleep=sleeps)
        async with ToolClient(HttpTransport("http://mcp.test/mcp", executor=executor), name="remote") as client:
            assert client.server_info["name"] == "remote"
            assert [t["name"] for t in await client.list_tools()] == ["echo"]
            assert extract_text(await client.call_tool("echo", {"text": "over http"})) == "over http"

    @pytest.mark.asyncio
    async def test_network_failure_marks_dead(self, sleeps) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        executor = RequestExecutor(httpx.AsyncClient(transport=httpx.MockTransport(handler)), sleep=sleeps)
        transport = HttpTransport("http://mcp.test/mcp", executor=executor, policy=NO_RETRY)
        await transport.start()
        with pytest.raises(TransportException) as exc_info:
            await ToolClient(transport).connect()
        assert exc_info.value.code == ErrorCode.NETWORK_ERROR
        assert not transport.is_alive()

    @pytest.mark.asyncio
    async def test_error_status_raises_but_stays_alive(self, sleeps) -> None:
        backend = httpx.MockTransport(lambda _: httpx.Response(403, text="forbidden"))
        transport = HttpTransport("http://mcp.test/mcp", executor=RequestExecutor(httpx.AsyncClient(transport=backend), sleep=sleeps))
        await transport.start()
        with pytest.raises(TransportException) as exc_info:
            await transport.request(Envelope(method="tools/list", id=1))
        assert exc_info.value.code == ErrorCode.CLIENT_ERROR
        assert exc_info.value.error.status == 403
        assert transport.is_alive()

    @pytest.mark.asyncio
    async def test_unparseable_reply_is_protocol_error(self, sleeps) -> None:
        backend = httpx.MockTransport(lambda _: httpx.Response(200, text="<html>proxy error</html>"))
        transport = HttpTransport("http://mcp.test/mcp", executor=RequestExecutor(httpx.AsyncClient(transport=backend), sleep=sleeps))
        await transport.start()
        with pytest.raises(ProtocolError):
            await transport.request(Envelope(method="tools/list", id=1))
        assert transport.is_alive()


# ─────────────────────────────────────────────────────────────────────────────
# SSE
# ─────────────────────────────────────────────────────────────────────────────


class QueueStream(httpx.AsyncByteStream):
    """Open-ended event stream fed from a queue."""

    def __init__(self, first: bytes | None) -> None:
        self.first = first
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self.first:
            yield self.first
        while (chunk := await self.queue.get()) is not None:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class SseServer:
    """MockTransport handler: GET opens the stream, POSTs answer on it."""

    def __init__(self, *, send_endpoint: bool = True, inline: bool = False, get_status: int = 200) -> None:
        self.stream = QueueStream(b"event: endpoint\ndata: /messages?session=1\n\n" if send_endpoint else None)
        self.inline = inline
        self.get_status = get_status
        self.posted: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            if self.get_status >= 400:
                return httpx.Response(self.get_status, text="nope")
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=self.stream)
        self.posted.append(str(request.url))
        reply = answer(orjson.loads(request.content))
        if reply is None:
            return httpx.Response(202)
        if self.inline:
            return httpx.Response(200, json=reply)
        self.stream.queue.put_nowait(b": keep-alive\n\ndata: " + orjson.dumps(reply) + b"\n\n")
        return httpx.Response(202, text="Accepted")


class TestSse:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("inline", [False, True])
    async def test_session_over_sse(self, inline: bool) -> None:
        server = SseServer(inline=inline)
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as http:
            transport = SseTransport("http://mcp.test/sse", client=http, handshake_timeout=2, request_timeout=2)
            async with ToolClient(transport, name="sse") as client:
                assert transport.endpoint == "http://mcp.test/messages?session=1"
                assert client.server_info["name"] == "remote"
                assert extract_text(await client.call_tool("echo", {"text": "streamed"})) == "streamed"
            assert not transport.is_alive()
        assert all(url == "http://mcp.test/messages?session=1" for url in server.posted)

    @pytest.mark.asyncio
    async def test_handshake_timeout(self) -> None:
        server = SseServer(send_endpoint=False)
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as http:
            transport = SseTransport("http://mcp.test/sse", client=http, handshake_timeout=0.2)
            with pytest.raises(TransportException) as exc_info:
                await transport.start()
        assert exc_info.value.code == ErrorCode.TIMEOUT
        assert not transport.is_alive()

    @pytest.mark.asyncio
    async def test_stream_refused(self) -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(SseServer(get_status=503))) as http:
            transport = SseTransport("http://mcp.test/sse", client=http, handshake_timeout=2)
            with pytest.raises(TransportException) as exc_info:
                await transport.start()
        assert exc_info.value.code == ErrorCode.UNAVAILABLE
        assert exc_info.value.error.status == 503

    @pytest.mark.asyncio
    async def test_stream_end_fails_pending_requests(self) -> None:
        server = SseServer()
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as http:
            transport = SseTransport("http://mcp.test/sse", client=http, handshake_timeout=2, request_timeout=5)
            await transport.start()
            server.stream.queue.put_nowait(None)  # server hangs up
            with pytest.raises(TransportException):
                await transport.request(Envelope(method="tools/list", id=42))
            await transport.close()
