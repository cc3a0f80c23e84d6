"""Server-sent event streaming with a consecutive-failure breaker.

StreamExecutor opens one POST whose response is an event stream and hands
each decoded JSON event to ``on_event(payload, done)`` in wire order:

- ``data: [DONE]`` ends the stream with ``on_event(None, True)``
- an event that does not parse, even after repair, is dropped; ten in a
  row (configurable) abort the stream with STREAM_ABORTED
- a parsed event resets the failure count and is delivered
- transport end without the sentinel still yields one ``on_event(None, True)``
- setting the cancel event stops delivery at once, without the done signal

The connection is released on every exit path. There is no retry at this
layer; an error status on the initial response is fatal before any event.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Self, TypeVar

import httpx

from toolrelay.foundation.config import HttpSettings, StreamSettings, get_settings
from toolrelay.foundation.errors import Err, ErrorCode, FatalError, Ok, Result, truncate
from toolrelay.io.streaming import aiter_sse, encode, parse_lenient
from toolrelay.runtime.resilience import CircuitBreaker

from .http import status_code_to_error, transport_error_code

if TYPE_CHECKING:
    from types import TracebackType

    from toolrelay.foundation.errors import JsonValue

logger = logging.getLogger("toolrelay.stream")

# Sync or async callback: (payload, done) -> None
OnEvent = Callable[["JsonValue | None", bool], Any]

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class StreamSummary:
    """Outcome of a stream that was not aborted.

    Attributes:
        delivered: Events handed to on_event (excluding the done signal)
        dropped: Unparseable events discarded
        completed: The done signal was emitted
        cancelled: Stopped through the cancel event
        elapsed_ms: Wall time from open to close
    """

    delivered: int
    dropped: int
    completed: bool
    cancelled: bool
    elapsed_ms: float


async def _emit(on_event: OnEvent, payload: JsonValue | None, done: bool) -> None:
    outcome = on_event(payload, done)
    if inspect.isawaitable(outcome):
        await outcome


async def _unless_cancelled(work: Awaitable[T], cancel: asyncio.Event) -> T | None:
    """Await ``work`` unless ``cancel`` is set first, in which case return None."""
    task = asyncio.ensure_future(work)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    return None if task.cancelled() else task.result()


class StreamExecutor:
    """Runs event streams against a JSON POST endpoint.

    Args:
        client: Borrowed httpx.AsyncClient (not closed by the executor)
        settings: HTTP settings (default: from environment)
        stream_settings: Breaker threshold and done sentinel (default: from environment)

    Example:
        >>> async with StreamExecutor() as executor:
        ...     result = await executor.stream(url, headers, payload, lambda ev, done: print(ev, done))
        >>> result.unwrap().delivered
        42
    """

    __slots__ = ("_client", "_owns_client", "_settings", "_stream_settings")

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        settings: HttpSettings | None = None,
        stream_settings: StreamSettings | None = None,
    ) -> None:
        self._settings = settings or get_settings().http
        self._stream_settings = stream_settings or get_settings().stream
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.timeout,
                verify=self._settings.verify_ssl,
                headers={"User-Agent": self._settings.user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None) -> None:
        await self.aclose()

    async def stream(
        self,
        url: str,
        headers: Mapping[str, str] | None,
        body: JsonValue,
        on_event: OnEvent,
        *,
        cancel: asyncio.Event | None = None,
    ) -> Result[StreamSummary, FatalError]:
        """Stream events from ``url`` into ``on_event``.

        Setting ``cancel`` stops the stream even while a read is pending.
        Exceptions raised by ``on_event`` propagate to the caller after the
        connection is released.
        """
        request_headers = {"Content-Type": "application/json", "Accept": "text/event-stream", **(headers or {})}
        content = encode(body) if body is not None else None
        sentinel = self._stream_settings.done_sentinel
        breaker = CircuitBreaker(failure_threshold=self._stream_settings.max_consecutive_failures)
        delivered = dropped = 0
        start = time.perf_counter()

        def summary(*, completed: bool = False, cancelled: bool = False) -> StreamSummary:
            return StreamSummary(delivered, dropped, completed, cancelled, (time.perf_counter() - start) * 1000)

        def stopped() -> Result[StreamSummary, FatalError]:
            logger.info(f"[{url}] Stream cancelled after {delivered} event(s)")
            return Ok(summary(cancelled=True))

        async def consume(response: httpx.Response) -> Result[StreamSummary, FatalError]:
            nonlocal delivered, dropped
            async for event in aiter_sse(response.aiter_lines()):
                if cancel is not None and cancel.is_set():
                    return stopped()

                if event.data.strip() == sentinel:
                    await _emit(on_event, None, True)
                    return Ok(summary(completed=True))

                parsed = parse_lenient(event.data)
                if parsed.is_err():
                    dropped += 1
                    logger.debug(f"[{url}] Dropped unparseable event ({breaker.failures + 1} in a row): {event.data[:80]!r}")
                    if breaker.record_failure():
                        logger.error(f"[{url}] Stream aborted after {breaker.failures} consecutive unparseable events")
                        return Err(FatalError(
                            message=f"Stream aborted after {breaker.failures} consecutive unparseable events",
                            code=ErrorCode.STREAM_ABORTED,
                            url=url,
                            status=response.status_code,
                            body=truncate(event.data, self._settings.max_error_body),
                        ))
                    continue

                breaker.record_success()
                await _emit(on_event, parsed.unwrap(), False)
                delivered += 1

            if cancel is not None and cancel.is_set():
                return stopped()
            logger.debug(f"[{url}] Stream ended without {sentinel!r} sentinel")
            await _emit(on_event, None, True)
            return Ok(summary(completed=True))

        try:
            async with self._get_client().stream(
                "POST", url, content=content, headers=request_headers, timeout=self._settings.timeout,
            ) as response:
                if response.status_code >= 400:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(f"[{url}] Stream request failed with status {response.status_code}")
                    return Err(FatalError(
                        message=f"Stream request failed with status {response.status_code}",
                        code=status_code_to_error(response.status_code),
                        url=url,
                        status=response.status_code,
                        body=truncate(text, self._settings.max_error_body),
                    ))

                if cancel is None:
                    return await consume(response)
                outcome = await _unless_cancelled(consume(response), cancel)
                return stopped() if outcome is None else outcome
        except httpx.RequestError as e:
            code = transport_error_code(e)
            logger.error(f"[{url}] Stream failure after {delivered} event(s): {type(e).__name__}: {e}")
            return Err(FatalError(
                message=f"Stream failed: {str(e) or type(e).__name__}",
                code=code,
                url=url,
                cause=f"{type(e).__name__}: {e}",
            ))
