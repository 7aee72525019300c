"""Per-host network probes used by the scan orchestrator.

Every probe is independent and bounded by its own timeout. Expected negative
outcomes (unreachable host, closed port, silent service, missing PTR record)
come back as ``False``/``None``/the input value and are logged at debug; none
of the public probes raise.
"""

from __future__ import annotations

import asyncio
import logging
import math
import platform
import re
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import dns.asyncresolver
import dns.exception
import dns.reversename
import httpx
import lxml.html
from lxml.etree import ParserError

from netinventory.core.config import settings
from netinventory.db.models import utcnow
from netinventory.services.port_catalog import WEB_PORTS, label_for_port, refine_label_from_banner
from netinventory.services.subnet_calculator import SubnetCalculator

logger = logging.getLogger(__name__)

MAX_BANNER_BYTES = 1024
MAX_TEXT_LENGTH = 1000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class DiscoveredServiceResult:
    host_address: str
    host_name: str
    port: int
    is_reachable: bool = True
    response_time_ms: float = 0.0
    service_type: str = "Unknown"
    banner: Optional[str] = None
    discovered_at: datetime = field(default_factory=utcnow)

    @property
    def service_key(self) -> str:
        return f"{self.host_address}:{self.port}"


def sanitize_text(value: Optional[str]) -> Optional[str]:
    """Strip NUL/control characters (newline, CR and tab survive) and cap the length."""
    if value is None:
        return None
    cleaned = _CONTROL_CHARS.sub("", value).strip()
    if not cleaned:
        return None
    if len(cleaned) > MAX_TEXT_LENGTH:
        cleaned = cleaned[:MAX_TEXT_LENGTH] + "..."
    return cleaned


def ping_command(host: str, timeout: float) -> List[str]:
    """One echo request with the platform's flavour of timeout flag."""
    system = platform.system().lower()
    if system == "windows":
        return ["ping", "-n", "1", "-w", str(int(timeout * 1000)), host]
    if system == "darwin":
        return ["ping", "-c", "1", "-W", str(int(timeout * 1000)), host]
    return ["ping", "-c", "1", "-W", str(max(1, math.ceil(timeout))), host]


def connect_timeout_for(port: int) -> float:
    if port <= 1024:
        return settings.CONNECT_TIMEOUT_SECONDS
    return settings.HIGH_PORT_CONNECT_TIMEOUT_SECONDS


def extract_html_title(content: str) -> Optional[str]:
    if not content or not content.strip():
        return None
    try:
        document = lxml.html.fromstring(content)
    except (ParserError, ValueError):
        return None
    title = document.findtext(".//title")
    return title.strip() if title and title.strip() else None


class ProbeEngine:
    """Stateless reachability, name, and port probes."""

    def __init__(
        self,
        ping_timeout: Optional[float] = None,
        banner_timeout: Optional[float] = None,
        http_timeout: Optional[float] = None,
        dns_timeout: Optional[float] = None,
    ):
        self.ping_timeout = ping_timeout or settings.PING_TIMEOUT_SECONDS
        self.banner_timeout = banner_timeout or settings.BANNER_TIMEOUT_SECONDS
        self.http_timeout = http_timeout or settings.HTTP_TIMEOUT_SECONDS
        self.dns_timeout = dns_timeout or settings.DNS_TIMEOUT_SECONDS

    async def is_reachable(self, host: str, timeout: Optional[float] = None) -> bool:
        """Single ICMP echo through the OS ping binary. Any failure counts as unreachable."""
        timeout = timeout or self.ping_timeout
        if not shutil.which("ping"):
            logger.debug("ping binary not available, treating %s as unreachable", host)
            return False

        proc = None
        try:
            proc = await asyncio.create_subprocess_exec(
                *ping_command(host, timeout),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            return_code = await asyncio.wait_for(proc.wait(), timeout=timeout + 0.5)
            return return_code == 0
        except asyncio.TimeoutError:
            logger.debug("Ping to %s timed out", host)
            if proc is not None and proc.returncode is None:
                proc.kill()
                await proc.wait()
            return False
        except Exception as e:
            logger.debug("Ping to %s failed: %s", host, e)
            return False

    async def resolve_name(self, host: str) -> str:
        """Reverse PTR lookup for IP literals; the input comes back unchanged otherwise."""
        if not SubnetCalculator.is_ipv4(host):
            return host
        try:
            resolver = dns.asyncresolver.Resolver()
            answer = await resolver.resolve(
                dns.reversename.from_address(host), "PTR", lifetime=self.dns_timeout
            )
            name = str(answer[0]).rstrip(".")
            return name or host
        except dns.exception.DNSException as e:
            logger.debug("Reverse DNS lookup failed for %s: %s", host, e)
            return host
        except Exception as e:
            logger.debug("Reverse DNS lookup errored for %s: %s", host, e)
            return host

    async def probe_port(
        self,
        host: str,
        hostname: str,
        port: int,
        timeout: Optional[float] = None,
    ) -> Optional[DiscoveredServiceResult]:
        """
        TCP connect to host:port, timing the handshake.

        Returns None when the port is closed, filtered or anything unexpected
        happens. Banner collection is best effort and never discards an open
        port.
        """
        timeout = timeout or connect_timeout_for(port)
        started = time.perf_counter()
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug("Port %s:%s closed or filtered: %s", host, port, e)
            return None
        except Exception as e:
            logger.debug("Port probe failed for %s:%s: %s", host, port, e)
            return None

        response_time_ms = (time.perf_counter() - started) * 1000

        try:
            label = label_for_port(port)
            if port in WEB_PORTS:
                await self._close(writer)
                banner = await self.fetch_http_banner(host, port)
            else:
                banner = await self.read_banner(reader)
                await self._close(writer)

            return DiscoveredServiceResult(
                host_address=host,
                host_name=hostname,
                port=port,
                is_reachable=True,
                response_time_ms=round(response_time_ms, 2),
                service_type=refine_label_from_banner(label, banner),
                banner=banner,
            )
        except Exception as e:
            logger.debug("Port probe failed for %s:%s after connect: %s", host, port, e)
            return None

    async def read_banner(self, reader: asyncio.StreamReader) -> Optional[str]:
        """Whatever the service sends unprompted within the banner timeout."""
        try:
            data = await asyncio.wait_for(reader.read(MAX_BANNER_BYTES), timeout=self.banner_timeout)
        except (asyncio.TimeoutError, OSError):
            return None
        if not data:
            return None
        return sanitize_text(data.decode("utf-8", errors="replace"))

    async def fetch_http_banner(self, host: str, port: int) -> Optional[str]:
        """
        Build a banner from a short HTTP GET: status line, identifying headers
        and the page title.
        """
        scheme = "https" if WEB_PORTS[port].tls else "http"
        url = f"{scheme}://{host}:{port}/"
        try:
            async with httpx.AsyncClient(verify=False, timeout=self.http_timeout) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug("HTTP banner request to %s failed: %s", url, e)
            return None

        parts = [f"Status: {response.http_version} {response.status_code} {response.reason_phrase}".rstrip()]
        for header in ("Server", "X-Powered-By", "Content-Type"):
            value = response.headers.get(header)
            if value:
                parts.append(f"{header}: {value}")

        if "html" in response.headers.get("Content-Type", "").lower():
            title = extract_html_title(response.text)
            if title:
                parts.append(f"Title: {title}")

        return sanitize_text(" | ".join(parts))

    @staticmethod
    async def _close(writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


probe_engine = ProbeEngine()
