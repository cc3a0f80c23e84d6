"""Incremental server-sent events decoder.

Feeds on decoded text lines (as produced by ``httpx.Response.aiter_lines``)
and yields complete events in wire order, following the WHATWG
event-stream parsing rules:

- ``field: value`` lines accumulate into the pending event
- multiple ``data`` lines are joined with ``\\n``
- a blank line dispatches the event (events without data are discarded)
- lines starting with ``:`` are comments
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class SSEEvent:
    """One dispatched server-sent event."""

    data: str
    event: str = "message"
    id: str | None = None
    retry: int | None = None


@dataclass(slots=True)
class SSEDecoder:
    """Stateful line-to-event decoder.

    Example:
        >>> decoder = SSEDecoder()
        >>> decoder.feed("data: hello")
        >>> decoder.feed("")
        SSEEvent(data='hello', event='message', id=None, retry=None)
    """

    _data: list[str] = field(default_factory=list)
    _event: str = ""
    _id: str | None = None
    _retry: int | None = None

    def feed(self, line: str) -> SSEEvent | None:
        """Consume one line; returns an event when the line completes one."""
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        match name:
            case "data":
                self._data.append(value)
            case "event":
                self._event = value
            case "id" if "\0" not in value:
                self._id = value
            case "retry" if value.isdigit():
                self._retry = int(value)
        return None

    def flush(self) -> SSEEvent | None:
        """Dispatch a pending event at end of stream (lenient about the final blank line)."""
        return self._dispatch()

    def _dispatch(self) -> SSEEvent | None:
        if not self._data:
            self._event = ""
            return None
        event = SSEEvent(data="\n".join(self._data), event=self._event or "message", id=self._id, retry=self._retry)
        self._data, self._event = [], ""
        return event


async def aiter_sse(lines: AsyncIterable[str]) -> AsyncIterator[SSEEvent]:
    """Adapt an async line iterator into an async event iterator."""
    decoder = SSEDecoder()
    async for line in lines:
        if (event := decoder.feed(line)) is not None:
            yield event
    if (event := decoder.flush()) is not None:
        yield event
