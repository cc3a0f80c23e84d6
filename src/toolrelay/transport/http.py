"""Unary JSON POST with bounded retry.

RequestExecutor turns one logical call into at most ``max_attempts`` POSTs:

- 2xx: success. Empty body becomes ``{}``; unparseable JSON gets one
  repair pass, then degrades to a RawPayload instead of failing
- 429 / 5xx / transport errors: retried. The wait honours
  ``retry-after-ms``, then ``retry-after``, then exponential backoff
- any other status, or a body that fails content decoding: fatal at once

Every exhausted path returns ``Err(FatalError)`` with url, status or
cause, truncated body and attempt count. Nothing is raised for transport
conditions.

Example:
    >>> async with RequestExecutor() as executor:
    ...     result = await executor.execute(url, {"Authorization": key}, payload)
    >>> body = result.unwrap().body if result.is_ok() else None
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Self

import httpx
from pydantic import BaseModel, ConfigDict, computed_field

from toolrelay.foundation.config import HttpSettings, get_settings
from toolrelay.foundation.errors import Err, ErrorCode, FatalError, Ok, Result, truncate
from toolrelay.io.streaming.codec import encode, parse_lenient
from toolrelay.runtime.retry import RetryPolicy, retry_hint

if TYPE_CHECKING:
    from types import TracebackType

    from toolrelay.foundation.errors import JsonValue

logger = logging.getLogger("toolrelay.http")

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class RawPayload:
    """Body of a 2xx response that could not be parsed even after repair."""

    text: str


class HttpResponse(BaseModel):
    """Successful response of a unary call.

    Attributes:
        status_code: Final 2xx status
        headers: Response headers (lower-cased names)
        body: Parsed JSON, ``{}`` for empty bodies, or RawPayload
        url: Final URL
        elapsed_ms: Wall time across all attempts and waits
        attempts: Attempts used, including the successful one
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    status_code: int
    headers: dict[str, str]
    body: Any
    url: str
    elapsed_ms: float
    attempts: int = 1

    @computed_field
    @property
    def is_raw(self) -> bool:
        """Whether the body degraded to a RawPayload."""
        return isinstance(self.body, RawPayload)


def status_code_to_error(status: int) -> ErrorCode:
    """Classify a non-2xx status."""
    if status == 429:
        return ErrorCode.RATE_LIMITED
    if status >= 500:
        return ErrorCode.SERVER_ERROR
    return ErrorCode.CLIENT_ERROR


def transport_error_code(exc: httpx.RequestError) -> ErrorCode:
    if isinstance(exc, httpx.TimeoutException):
        return ErrorCode.TIMEOUT
    if isinstance(exc, httpx.DecodingError):
        return ErrorCode.PARSE_ERROR
    return ErrorCode.NETWORK_ERROR


class RequestExecutor:
    """Executes unary JSON POSTs with retry, backoff and graceful parsing.

    The executor owns its httpx client unless one is passed in. ``sleep`` is
    injectable so tests can record waits instead of performing them.

    Args:
        client: Borrowed httpx.AsyncClient (not closed by the executor)
        settings: HTTP settings (default: from environment)
        policy: Default retry policy when execute() gets none
        sleep: Awaitable sleep function (default: asyncio.sleep)
    """

    __slots__ = ("_client", "_owns_client", "_settings", "_policy", "_sleep")

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        settings: HttpSettings | None = None,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings().http
        self._policy = policy or RetryPolicy.from_settings(get_settings().retry)
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @property
    def settings(self) -> HttpSettings:
        return self._settings

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.timeout,
                verify=self._settings.verify_ssl,
                headers={"User-Agent": self._settings.user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        """Close the httpx client if the executor created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None) -> None:
        await self.aclose()

    # ─────────────────────────────────────────────────────────────────
    # Execution
    # ─────────────────────────────────────────────────────────────────

    async def execute(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: JsonValue = None,
        policy: RetryPolicy | None = None,
    ) -> Result[HttpResponse, FatalError]:
        """POST ``body`` as JSON to ``url`` and return the parsed response."""
        policy = policy or self._policy
        client = self._get_client()
        request_headers = {"Content-Type": "application/json", "Accept": "application/json", **(headers or {})}
        content = encode(body) if body is not None else None
        start = time.perf_counter()

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await client.post(url, content=content, headers=request_headers, timeout=self._settings.timeout)
            except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
                return Err(FatalError(
                    message=f"Invalid request URL: {e}",
                    code=ErrorCode.CLIENT_ERROR,
                    url=url,
                    cause=f"{type(e).__name__}: {e}",
                    attempts=attempt,
                ))
            except httpx.TransportError as e:
                code = transport_error_code(e)
                if not policy.should_retry(code, attempt):
                    logger.error(f"[{url}] Giving up after {attempt} attempt(s): {type(e).__name__}: {e}")
                    return Err(FatalError(
                        message=f"Request failed after {attempt} attempt(s): {str(e) or type(e).__name__}",
                        code=code,
                        url=url,
                        cause=f"{type(e).__name__}: {e}",
                        attempts=attempt,
                    ))
                delay = policy.delay_for(attempt)
                logger.warning(f"[{url}] Retry {attempt + 1}/{policy.max_attempts} after {delay:.2f}s ({code}: {type(e).__name__})")
                await self._sleep(delay)
                continue
            except httpx.RequestError as e:
                code = transport_error_code(e)
                logger.error(f"[{url}] Request failed: {type(e).__name__}: {e}")
                return Err(FatalError(
                    message=f"Request failed: {str(e) or type(e).__name__}",
                    code=code,
                    url=url,
                    cause=f"{type(e).__name__}: {e}",
                    attempts=attempt,
                ))

            status = response.status_code
            if 200 <= status < 300:
                return Ok(self._success(response, attempt, start))

            code = status_code_to_error(status)
            if not policy.should_retry(code, attempt):
                logger.error(f"[{url}] Request failed with status {status} after {attempt} attempt(s)")
                return Err(FatalError(
                    message=f"API request failed with status {status}",
                    code=code,
                    url=url,
                    status=status,
                    body=truncate(response.text, self._settings.max_error_body),
                    attempts=attempt,
                ))
            delay = policy.delay_for(attempt, retry_hint(response.headers))
            logger.warning(f"[{url}] Retry {attempt + 1}/{policy.max_attempts} after {delay:.2f}s (status {status})")
            await self._sleep(delay)

    def _success(self, response: httpx.Response, attempts: int, start: float) -> HttpResponse:
        text = response.text
        body: Any
        if not text.strip():
            body = {}
        else:
            parsed = parse_lenient(text)
            if parsed.is_ok():
                body = parsed.unwrap()
            else:
                logger.warning(f"[{response.url}] Unparseable response body, returning raw payload ({len(text)} chars)")
                body = RawPayload(text)
        return HttpResponse(
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=body,
            url=str(response.url),
            elapsed_ms=(time.perf_counter() - start) * 1000,
            attempts=attempts,
        )
