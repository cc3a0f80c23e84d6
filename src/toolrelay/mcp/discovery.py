"""Finding MCP tool servers.

EndpointDiscovery is an explicit registry of endpoints keyed by
``host:port``. ``scan`` fills it using the first strategy available:

1. ``dns-sd`` (macOS): browse the service type, then resolve each instance
2. ``avahi-browse`` (Linux): one terminating, resolving browse
3. TCP probe of common localhost ports

Nothing here raises for environmental reasons: missing tools, timeouts,
subprocess or network failures all give empty results and a log line.

Example:
    >>> discovery = EndpointDiscovery()
    >>> endpoints = await discovery.scan(timeout=3)
    >>> discovery.register("local-files", "127.0.0.1", 8765, transport="http")
    >>> caps = await discovery.query_capabilities("127.0.0.1", 8765)
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Annotated, Any, Literal

import httpx
import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field

from toolrelay.foundation.config import DiscoverySettings, get_settings

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger("toolrelay.discovery")

TransportKind = Literal["sse", "http"]

_DEFAULT_PATHS: dict[str, str] = {"sse": "/sse", "http": "/mcp"}
_REACHED_AT = re.compile(r"can be reached at (?P<host>\S+?)\.?:(?P<port>\d+)")
_TXT_PAIR = re.compile(r"(\w+)=(\S+)")
_AVAHI_FIELD = re.compile(r"^\s*(?P<key>\w+)\s*=\s*\[(?P<value>.*)\]\s*$")


class Capabilities(BaseModel):
    """What a server advertises. The empty instance means "unknown"."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    tools: list[dict[str, Any]] = Field(default_factory=list)
    resources: list[dict[str, Any]] = Field(default_factory=list)
    prompts: list[dict[str, Any]] = Field(default_factory=list)

    @computed_field
    @property
    def is_empty(self) -> bool:
        return not (self.tools or self.resources or self.prompts)


class Endpoint(BaseModel):
    """A reachable tool server.

    Attributes:
        name: Display / client name
        host: Hostname or address
        port: TCP port
        transport: Wire flavour, "sse" (legacy MCP SSE) or "http"
        path: URL path of the MCP endpoint (default per transport)
        discovered_at: When the endpoint was found or registered
        capabilities: Last known capabilities, if queried or supplied
    """

    model_config = ConfigDict(frozen=True)

    name: str
    host: str
    port: Annotated[int, Field(ge=0, le=65535)]
    transport: TransportKind = "sse"
    path: str | None = None
    discovered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    capabilities: Capabilities | None = None

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    @computed_field
    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    @property
    def url(self) -> str:
        path = self.path or _DEFAULT_PATHS[self.transport]
        return f"{self.base_url}{path if path.startswith('/') else '/' + path}"


def _txt_hints(text: str) -> dict[str, str]:
    hints = dict(_TXT_PAIR.findall(text))
    return {k: v.strip('"') for k, v in hints.items() if k in ("path", "transport")}


def _endpoint(name: str, host: str, port: int, hints: dict[str, str]) -> Endpoint:
    transport = hints.get("transport", "sse")
    return Endpoint(
        name=name,
        host=host,
        port=port,
        transport=transport if transport in _DEFAULT_PATHS else "sse",
        path=hints.get("path"),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Output parsers
# ─────────────────────────────────────────────────────────────────────────────

def parse_dns_sd_browse(lines: Sequence[str]) -> list[str]:
    """Instance names from ``dns-sd -B`` output, in order, deduplicated."""
    names: list[str] = []
    for line in lines:
        parts = line.split()
        if len(parts) >= 7 and parts[1] == "Add":
            name = " ".join(parts[6:])
            if name not in names:
                names.append(name)
    return names


def parse_dns_sd_resolve(name: str, lines: Sequence[str]) -> Endpoint | None:
    """Endpoint from ``dns-sd -L`` output (host, port and TXT hints)."""
    for i, line in enumerate(lines):
        if m := _REACHED_AT.search(line):
            txt = " ".join(lines[i + 1:i + 2])
            return _endpoint(name, m["host"], int(m["port"]), _txt_hints(txt))
    return None


def parse_avahi(lines: Sequence[str], service_type: str) -> list[Endpoint]:
    """Endpoints from ``avahi-browse -t -r`` resolved records."""
    records: list[dict[str, str]] = []
    current: dict[str, str] | None = None
    for line in lines:
        if line.startswith("="):
            parts = line.split()
            # "=  iface proto <instance name...> <service type> <domain>"
            tail = parts[3:]
            if service_type in tail:
                tail = tail[:tail.index(service_type)]
            current = {"name": " ".join(tail)}
            records.append(current)
        elif current is not None and (m := _AVAHI_FIELD.match(line)):
            current[m["key"].lower()] = m["value"]

    found: dict[str, Endpoint] = {}
    for rec in records:
        host = rec.get("address") or rec.get("hostname")
        port = rec.get("port", "")
        if not host or not port.isdigit():
            continue
        ep = _endpoint(rec["name"] or f"{host}:{port}", host, int(port), _txt_hints(rec.get("txt", "")))
        found.setdefault(ep.key, ep)
    return list(found.values())


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────

class EndpointDiscovery:
    """Registry of known endpoints plus the strategies that fill it.

    Args:
        settings: Discovery settings (default: from environment)
        client: Borrowed httpx.AsyncClient for capability queries
        which: Executable lookup (default: shutil.which)
    """

    def __init__(
        self,
        settings: DiscoverySettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.settings = settings or get_settings().discovery
        self._client = client
        self._which = which
        self._endpoints: dict[str, Endpoint] = {}

    def __repr__(self) -> str:
        return f"EndpointDiscovery(endpoints={len(self._endpoints)})"

    # ─────────────────────────────────────────────────────────────────
    # Registry
    # ─────────────────────────────────────────────────────────────────

    def register(
        self,
        name: str,
        host: str,
        port: int,
        capabilities: Capabilities | dict[str, Any] | None = None,
        transport: TransportKind = "sse",
        path: str | None = None,
    ) -> Endpoint:
        """Record an endpoint by hand, bypassing discovery."""
        if isinstance(capabilities, dict):
            capabilities = Capabilities.model_validate(capabilities)
        endpoint = Endpoint(name=name, host=host, port=port, transport=transport, path=path, capabilities=capabilities)
        self._endpoints[endpoint.key] = endpoint
        return endpoint

    def list_endpoints(self) -> list[Endpoint]:
        return list(self._endpoints.values())

    def get(self, host: str, port: int) -> Endpoint | None:
        return self._endpoints.get(f"{host}:{port}")

    def forget(self, host: str, port: int) -> bool:
        return self._endpoints.pop(f"{host}:{port}", None) is not None

    # ─────────────────────────────────────────────────────────────────
    # Scanning
    # ─────────────────────────────────────────────────────────────────

    async def scan(self, timeout: float | None = None, service_type: str | None = None) -> list[Endpoint]:
        """Discover endpoints with the first available strategy and record them."""
        timeout = timeout or self.settings.scan_timeout
        service_type = service_type or self.settings.service_type
        try:
            if self._which("dns-sd"):
                found = await self._scan_dns_sd(service_type, timeout)
            elif self._which("avahi-browse"):
                found = await self._scan_avahi(service_type, timeout)
            else:
                found = await self._scan_ports()
        except Exception as e:
            logger.warning(f"Endpoint scan failed: {type(e).__name__}: {e}")
            return []
        for endpoint in found:
            self._endpoints[endpoint.key] = endpoint
        logger.info(f"Scan found {len(found)} endpoint(s)")
        return found

    async def _run_for(self, argv: Sequence[str], timeout: float, until: Callable[[list[str]], bool] | None = None) -> list[str]:
        """Collect stdout lines of a (possibly non-terminating) command until EOF, ``until`` or timeout."""
        try:
            process = await asyncio.create_subprocess_exec(
                *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning(f"Could not run {argv[0]}: {e}")
            return []
        assert process.stdout is not None
        lines: list[str] = []
        try:
            async with asyncio.timeout(timeout):
                while raw := await process.stdout.readline():
                    lines.append(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
                    if until is not None and until(lines):
                        break
        except TimeoutError:
            pass  # browsing commands run until killed
        finally:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            await process.wait()
        return lines

    async def _scan_dns_sd(self, service_type: str, timeout: float) -> list[Endpoint]:
        deadline = time.monotonic() + timeout
        names = parse_dns_sd_browse(await self._run_for(["dns-sd", "-B", service_type, "local"], timeout / 2))

        def resolved(lines: list[str]) -> bool:
            return len(lines) >= 2 and _REACHED_AT.search(lines[-2]) is not None

        found: list[Endpoint] = []
        for name in names:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"dns-sd scan ran out of time with {len(names) - len(found)} instance(s) unresolved")
                break
            lines = await self._run_for(["dns-sd", "-L", name, service_type, "local"], min(remaining, 2.0), resolved)
            if (endpoint := parse_dns_sd_resolve(name, lines)) is not None:
                found.append(endpoint)
        return found

    async def _scan_avahi(self, service_type: str, timeout: float) -> list[Endpoint]:
        return parse_avahi(await self._run_for(["avahi-browse", "-t", "-r", service_type], timeout), service_type)

    async def _probe(self, host: str, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), self.settings.probe_timeout)
        except (OSError, TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def _scan_ports(self) -> list[Endpoint]:
        host, ports = self.settings.probe_host, self.settings.probe_ports
        open_ports = await asyncio.gather(*(self._probe(host, port) for port in ports))
        return [Endpoint(name=f"localhost:{port}", host=host, port=port) for port, is_open in zip(ports, open_ports) if is_open]

    # ─────────────────────────────────────────────────────────────────
    # Capabilities
    # ─────────────────────────────────────────────────────────────────

    async def query_capabilities(self, host: str, port: int) -> Capabilities:
        """GET ``/capabilities``; any failure yields empty Capabilities.

        A registered endpoint at ``host:port`` is updated with the result.
        """
        url = f"{Endpoint(name='', host=host, port=port).base_url}/capabilities"
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.settings.capabilities_timeout)
            else:
                async with httpx.AsyncClient(timeout=self.settings.capabilities_timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()
            caps = Capabilities.model_validate(orjson.loads(response.content))
        except (httpx.HTTPError, orjson.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Capability query to {url} failed: {type(e).__name__}: {e}")
            return Capabilities()
        if (known := self._endpoints.get(f"{host}:{port}")) is not None:
            self._endpoints[known.key] = known.model_copy(update={"capabilities": caps})
        return caps
