"""Message pipes between a ToolClient and one tool backend.

A transport carries JSON-RPC envelopes and knows nothing about MCP
methods. Any object with the Transport capability set works; there is no
base class to inherit from.

- StdioTransport: child process, newline-delimited JSON on stdin/stdout
- HttpTransport: one POST per message through RequestExecutor
- SseTransport: legacy MCP SSE (GET event stream plus POST endpoint)

Transport failures raise TransportException. Responses are matched to
requests by id; stray lines, notifications and unrelated ids are skipped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from toolrelay.foundation.config import get_settings
from toolrelay.foundation.errors import ErrorCode, FatalError, ProtocolError, RelayException, TransportException, truncate
from toolrelay.io.streaming import ParseFailure, aiter_sse
from toolrelay.io.streaming.codec import encode
from toolrelay.transport.http import RawPayload, RequestExecutor

from .protocol import Envelope, RpcId, deserialize, serialize

if TYPE_CHECKING:
    from toolrelay.runtime.retry import RetryPolicy

logger = logging.getLogger("toolrelay.mcp.transport")

# Lines from a child process can be large (tool listings with schemas)
_STDIO_LINE_LIMIT = 16 * 1024 * 1024


@runtime_checkable
class Transport(Protocol):
    """Capability set every pipe provides."""

    async def start(self) -> None: ...
    async def request(self, message: Envelope) -> Envelope: ...
    async def notify(self, message: Envelope) -> None: ...
    def is_alive(self) -> bool: ...
    async def close(self) -> None: ...


def _unavailable(message: str, **fields: object) -> TransportException:
    return TransportException.create(message, ErrorCode.UNAVAILABLE, **fields)


# ═══════════════════════════════════════════════════════════════════════════════
# stdio
# ═══════════════════════════════════════════════════════════════════════════════

class StdioTransport:
    """Talks to a tool server started as a child process.

    Requests are serialized: one request is in flight at a time and its
    response is read from stdout under ``timeout``. A response that arrives
    after its request timed out is skipped later by id.

    Args:
        command: Executable (e.g. "npx", "uvx", "python")
        args: Command arguments
        env: Extra environment variables, merged over the current environment
        timeout: Seconds to wait for one response (default: McpSettings.request_timeout)
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.env = dict(env) if env else None
        self.timeout = timeout or get_settings().mcp.request_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"StdioTransport({self.command!r}, {self.args!r})"

    async def start(self) -> None:
        if self.is_alive():
            return
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env} if self.env else None,
                limit=_STDIO_LINE_LIMIT,
            )
        except OSError as e:
            raise _unavailable(f"Failed to start tool server '{self.command}': {e}", cause=f"{type(e).__name__}: {e}") from e
        logger.info(f"Started tool server process: {self.command} (PID {self._process.pid})")
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while line := await process.stderr.readline():
            logger.debug(f"[{self.command}] {line.decode('utf-8', errors='replace').rstrip()}")

    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _write(self, message: Envelope) -> None:
        if not self.is_alive():
            raise _unavailable(f"Tool server process '{self.command}' is not running")
        assert self._process is not None and self._process.stdin is not None
        try:
            self._process.stdin.write(serialize(message) + b"\n")
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportException.create(
                f"Lost pipe to '{self.command}'", ErrorCode.NETWORK_ERROR, cause=f"{type(e).__name__}: {e}",
            ) from e

    async def _read_response(self, request_id: RpcId | None) -> Envelope:
        assert self._process is not None and self._process.stdout is not None
        while True:
            line = await self._process.stdout.readline()
            if not line:
                raise TransportException.create(
                    f"Tool server '{self.command}' closed its output", ErrorCode.NETWORK_ERROR,
                )
            if not line.strip():
                continue
            message = deserialize(line)
            if isinstance(message, ParseFailure):
                logger.debug(f"[{self.command}] Skipping non-JSON output: {line[:80]!r}")
                continue
            if message.is_response and message.id == request_id:
                return message
            logger.debug(f"[{self.command}] Skipping unrelated message (id={message.id!r}, method={message.method!r})")

    async def request(self, message: Envelope) -> Envelope:
        async with self._lock:
            await self._write(message)
            try:
                async with asyncio.timeout(self.timeout):
                    return await self._read_response(message.id)
            except TimeoutError as e:
                raise TransportException.create(
                    f"Timed out after {self.timeout}s waiting for '{message.method}' response", ErrorCode.TIMEOUT,
                ) from e

    async def notify(self, message: Envelope) -> None:
        async with self._lock:
            await self._write(message)

    async def close(self) -> None:
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except TimeoutError:
                process.kill()
                await process.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP
# ═══════════════════════════════════════════════════════════════════════════════

_DEAD_CODES = frozenset({ErrorCode.NETWORK_ERROR, ErrorCode.TIMEOUT})


def _envelope_from_body(body: object, url: str) -> Envelope:
    if isinstance(body, RawPayload):
        raise ProtocolError(FatalError(message="Unparseable JSON-RPC response", code=ErrorCode.PARSE_ERROR, url=url))
    message = deserialize(encode(body))
    if isinstance(message, ParseFailure):
        raise ProtocolError(
            FatalError(message=message.message, code=ErrorCode.PROTOCOL_ERROR, url=url), rpc_code=message.code,
        )
    return message


class HttpTransport:
    """One JSON-RPC message per POST, with the executor's retry policy.

    A request that exhausts its retries on a connection-level failure
    (network error or timeout) marks the transport dead.
    """

    def __init__(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        *,
        executor: RequestExecutor | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self._executor = executor or RequestExecutor()
        self._owns_executor = executor is None
        self._policy = policy
        self._alive = False

    def __repr__(self) -> str:
        return f"HttpTransport({self.url!r})"

    async def start(self) -> None:
        self._alive = True

    def is_alive(self) -> bool:
        return self._alive

    async def _post(self, message: Envelope) -> object:
        if not self._alive:
            raise _unavailable(f"HTTP transport to {self.url} is closed", url=self.url)
        result = await self._executor.execute(self.url, self.headers, message.to_dict(), self._policy)
        if result.is_err() and result.unwrap_err().code in _DEAD_CODES:
            logger.warning(f"[{self.url}] Marking transport dead: {result.unwrap_err().message}")
            self._alive = False
        return result.unwrap_or_raise(TransportException).body

    async def request(self, message: Envelope) -> Envelope:
        return _envelope_from_body(await self._post(message), self.url)

    async def notify(self, message: Envelope) -> None:
        await self._post(message)

    async def close(self) -> None:
        self._alive = False
        if self._owns_executor:
            await self._executor.aclose()


# ═══════════════════════════════════════════════════════════════════════════════
# SSE
# ═══════════════════════════════════════════════════════════════════════════════

class SseTransport:
    """Legacy MCP over server-sent events.

    A background task holds the GET event stream open. The server first
    sends an ``endpoint`` event naming where to POST messages (resolved
    against the stream URL); responses then arrive on the stream and are
    matched to pending requests by id.

    Args:
        url: Event stream URL
        headers: Extra headers (e.g. authorization) for both GET and POST
        client: Borrowed httpx.AsyncClient
        handshake_timeout: Seconds to wait for the endpoint event
        request_timeout: Seconds to wait for one response
    """

    def __init__(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        handshake_timeout: float | None = None,
        request_timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self.url = url
        self.headers = dict(headers or {})
        self.handshake_timeout = handshake_timeout or settings.mcp.handshake_timeout
        self.request_timeout = request_timeout or settings.mcp.request_timeout
        self.endpoint: str | None = None
        self._client = client
        self._owns_client = client is None
        self._reader: asyncio.Task[None] | None = None
        self._endpoint_ready: asyncio.Future[str] | None = None
        self._pending: dict[RpcId, asyncio.Future[Envelope]] = {}

    def __repr__(self) -> str:
        return f"SseTransport({self.url!r})"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            http = get_settings().http
            self._client = httpx.AsyncClient(verify=http.verify_ssl, headers={"User-Agent": http.user_agent})
        return self._client

    async def start(self) -> None:
        if self.is_alive():
            return
        self._endpoint_ready = asyncio.get_running_loop().create_future()
        self._reader = asyncio.create_task(self._read_events(self._endpoint_ready))
        try:
            self.endpoint = await asyncio.wait_for(asyncio.shield(self._endpoint_ready), self.handshake_timeout)
        except TimeoutError as e:
            await self.close()
            raise TransportException.create(
                f"Timeout waiting for SSE endpoint from {self.url}", ErrorCode.TIMEOUT, url=self.url,
            ) from e
        except RelayException:
            await self.close()
            raise
        logger.info(f"[{self.url}] SSE endpoint: {self.endpoint}")

    async def _read_events(self, endpoint_ready: asyncio.Future[str]) -> None:
        failure: RelayException = _unavailable(f"SSE stream from {self.url} closed", url=self.url)
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **self.headers}
        try:
            async with self._get_client().stream(
                "GET", self.url, headers=headers, timeout=httpx.Timeout(self.handshake_timeout, read=None),
            ) as response:
                if response.status_code >= 400:
                    failure = TransportException.create(
                        f"SSE connection failed with status {response.status_code}",
                        ErrorCode.UNAVAILABLE, url=self.url, status=response.status_code,
                    )
                    return
                async for event in aiter_sse(response.aiter_lines()):
                    if event.event == "endpoint":
                        if not endpoint_ready.done():
                            endpoint_ready.set_result(str(response.url.join(event.data.strip())))
                    elif event.data.strip() == "[DONE]":
                        break
                    else:
                        self._dispatch(event.data)
        except httpx.HTTPError as e:
            failure = TransportException(FatalError.from_exception(e, url=self.url, context="SSE stream failed"))
        finally:
            if not endpoint_ready.done():
                endpoint_ready.set_exception(failure)
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(failure)

    def _dispatch(self, data: str) -> None:
        message = deserialize(data)
        if isinstance(message, ParseFailure):
            logger.debug(f"[{self.url}] Skipping unparseable SSE message: {data[:80]!r}")
            return
        if message.is_response and (future := self._pending.get(message.id)) is not None and not future.done():
            future.set_result(message)

    def is_alive(self) -> bool:
        return self._reader is not None and not self._reader.done() and self.endpoint is not None

    async def _post(self, message: Envelope) -> httpx.Response:
        if not self.is_alive() or self.endpoint is None:
            raise _unavailable(f"SSE transport to {self.url} is not connected", url=self.url)
        try:
            response = await self._get_client().post(
                self.endpoint,
                content=serialize(message),
                headers={"Content-Type": "application/json", **self.headers},
                timeout=self.request_timeout,
            )
        except httpx.RequestError as e:
            raise TransportException(FatalError.from_exception(e, url=self.endpoint, context="SSE POST failed")) from e
        if response.status_code >= 400:
            raise TransportException.create(
                f"SSE POST failed with status {response.status_code}",
                ErrorCode.CLIENT_ERROR if response.status_code < 500 else ErrorCode.SERVER_ERROR,
                url=self.endpoint, status=response.status_code, body=truncate(response.text),
            )
        return response

    async def request(self, message: Envelope) -> Envelope:
        if message.id is None:
            raise ValueError("request() needs an envelope with an id")
        future: asyncio.Future[Envelope] = asyncio.get_running_loop().create_future()
        self._pending[message.id] = future
        try:
            response = await self._post(message)
            # Some servers answer inline instead of on the stream
            if response.headers.get("content-type", "").startswith("application/json") and response.content.strip():
                inline = deserialize(response.content)
                if isinstance(inline, Envelope) and inline.is_response and inline.id == message.id:
                    return inline
            return await asyncio.wait_for(future, self.request_timeout)
        except TimeoutError as e:
            raise TransportException.create(
                f"Timed out after {self.request_timeout}s waiting for '{message.method}' response",
                ErrorCode.TIMEOUT, url=self.endpoint,
            ) from e
        finally:
            self._pending.pop(message.id, None)

    async def notify(self, message: Envelope) -> None:
        await self._post(message)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        if (ready := self._endpoint_ready) is not None and ready.done() and not ready.cancelled():
            ready.exception()  # mark retrieved
        self._endpoint_ready = None
        self.endpoint = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
