"""Shared fixtures: settings isolation, recorded sleeps, in-memory MCP backends."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pytest

from toolrelay.foundation.config import clear_settings_cache
from toolrelay.foundation.errors import ErrorCode, TransportException
from toolrelay.mcp.protocol import PROTOCOL_VERSION, Envelope, make_error, make_success


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Any:
    """Each test reads settings from a clean environment."""
    for key in list(os.environ):
        if key.startswith("TOOLRELAY_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield
    clear_settings_cache()


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


# ─────────────────────────────────────────────────────────────────────────────
# In-memory MCP backend
# ─────────────────────────────────────────────────────────────────────────────


class FakeTransport:
    """Transport answering MCP methods from memory.

    Tool calls return ``{"content": [{"type": "text", "text": "<label>:<tool>"}]}``.
    """

    def __init__(self, label: str, tools: list[str]) -> None:
        self.label = label
        self.tools = list(tools)
        self.alive = False
        self.closed = False
        self.fail_list = False
        self.fail_close = False
        self.calls: list[dict[str, Any]] = []
        self.notifications: list[str] = []

    async def start(self) -> None:
        self.alive = True

    def is_alive(self) -> bool:
        return self.alive

    async def request(self, message: Envelope) -> Envelope:
        params: Any = message.params or {}
        match message.method:
            case "initialize":
                return make_success({
                    "protocolVersion": PROTOCOL_VERSION,
                    "serverInfo": {"name": self.label, "version": "1.0"},
                    "capabilities": {"tools": {}},
                }, message.id)
            case "tools/list":
                if self.fail_list:
                    raise TransportException.create(f"{self.label} listing failed", ErrorCode.NETWORK_ERROR)
                return make_success({"tools": [
                    {"name": t, "description": f"{t} from {self.label}", "inputSchema": {"type": "object", "properties": {}}}
                    for t in self.tools
                ]}, message.id)
            case "tools/call":
                self.calls.append(params)
                if params["name"] == "broken":
                    return make_error(-32000, "tool exploded", message.id, {"hint": "retry later"})
                return make_success({"content": [{"type": "text", "text": f"{self.label}:{params['name']}"}]}, message.id)
            case _:
                return make_error(-32601, f"Method not found: {message.method}", message.id)

    async def notify(self, message: Envelope) -> None:
        self.notifications.append(message.method or "")

    async def close(self) -> None:
        self.alive = False
        self.closed = True
        if self.fail_close:
            raise RuntimeError(f"{self.label} refused to close")


@pytest.fixture
def make_transport() -> type[FakeTransport]:
    return FakeTransport
