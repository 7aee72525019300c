"""Scan orchestration: target expansion and bounded fan-out over the probe engine."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional

from netinventory.core.config import settings
from netinventory.core.exceptions import InvalidTargetError
from netinventory.services.port_catalog import COMMON_PORTS, EXTENDED_PORTS, FULL_PORT_RANGE
from netinventory.services.probe_engine import DiscoveredServiceResult, ProbeEngine, probe_engine
from netinventory.services.subnet_calculator import SubnetCalculator

logger = logging.getLogger(__name__)

_DASH_RANGE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})-(\d{1,3})$")
_HOSTNAME = re.compile(r"^[A-Za-z0-9_]([A-Za-z0-9_.-]{0,251}[A-Za-z0-9_])?$")


@dataclass
class ScanProgress:
    total_hosts: int = 0
    scanned_hosts: int = 0
    total_ports: int = 0
    scanned_ports: int = 0
    hosts_up: int = 0


def expand_target(target: str, max_hosts: Optional[int] = None) -> List[str]:
    """
    Turn a scan target into the list of hosts to probe.

    Accepted forms:
    - CIDR ``a.b.c.d/nn``: every host address, network and broadcast excluded
    - Dash range ``a.b.c.start-end`` on the last octet
    - A single IPv4 address or hostname

    CIDR targets larger than ``max_hosts`` (default SCAN_MAX_HOSTS) are
    rejected from the prefix length alone, before any address is generated.
    """
    target = (target or "").strip()
    if not target:
        raise InvalidTargetError(target, "target is empty")
    if max_hosts is None:
        max_hosts = settings.SCAN_MAX_HOSTS

    if "/" in target:
        try:
            _, prefix = SubnetCalculator.parse_cidr(target)
        except ValueError as e:
            raise InvalidTargetError(target, str(e))
        count = SubnetCalculator.host_count(prefix)
        if count > max_hosts:
            raise InvalidTargetError(target, f"{count} hosts exceeds the limit of {max_hosts}")
        return SubnetCalculator.enumerate_hosts(target)

    match = _DASH_RANGE.match(target)
    if match:
        octets = [int(part) for part in match.groups()]
        if any(value > 255 for value in octets):
            raise InvalidTargetError(target, "octet out of range 0-255")
        a, b, c, start, end = octets
        if start > end:
            raise InvalidTargetError(target, "range start is after range end")
        if end - start + 1 > settings.MAX_DASH_RANGE_HOSTS:
            raise InvalidTargetError(
                target, f"dash ranges are limited to {settings.MAX_DASH_RANGE_HOSTS} hosts"
            )
        return [f"{a}.{b}.{c}.{last}" for last in range(start, end + 1)]

    if SubnetCalculator.is_ipv4(target):
        return [target]
    if re.match(r"^[\d.]+$", target) or not _HOSTNAME.match(target):
        raise InvalidTargetError(target, "not an IPv4 address, range or hostname")
    return [target]


def resolve_ports(ports: Optional[Iterable[int]] = None, full_scan: bool = False) -> List[int]:
    """Explicit ports win, then the full range for full scans, else the extended catalog."""
    if ports:
        resolved = set()
        for port in ports:
            if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
                raise InvalidTargetError(str(port), "ports must be integers between 1 and 65535")
            resolved.add(port)
        return sorted(resolved)
    if full_scan:
        return list(FULL_PORT_RANGE)
    return list(EXTENDED_PORTS)


class ScanOrchestrator:
    """Runs one scan invocation; holds no state between calls."""

    def __init__(self, engine: Optional[ProbeEngine] = None, host_concurrency: Optional[int] = None,
                 port_concurrency: Optional[int] = None):
        self.engine = engine or probe_engine
        self.host_concurrency = host_concurrency or settings.HOST_CONCURRENCY
        self.port_concurrency = port_concurrency or settings.PORT_CONCURRENCY

    async def scan_host(
        self,
        host: str,
        ports: Optional[List[int]] = None,
        full_scan: bool = False,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ScanProgress] = None,
    ) -> List[DiscoveredServiceResult]:
        """Probe every port of one host, skipping the host entirely when it does not answer ping."""
        port_list = resolve_ports(ports, full_scan)

        if cancel_event is not None and cancel_event.is_set():
            return []

        if not await self.engine.is_reachable(host):
            logger.debug("Host %s is not reachable, skipping port probes", host)
            if progress is not None:
                progress.scanned_ports += len(port_list)
            return []

        if progress is not None:
            progress.hosts_up += 1

        hostname = await self.engine.resolve_name(host)
        semaphore = asyncio.Semaphore(self.port_concurrency)

        async def probe(port: int) -> Optional[DiscoveredServiceResult]:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                try:
                    return await self.engine.probe_port(host, hostname, port)
                finally:
                    if progress is not None:
                        progress.scanned_ports += 1

        results = await asyncio.gather(*(probe(port) for port in port_list))
        return [result for result in results if result is not None]

    async def scan_range(
        self,
        target: str,
        ports: Optional[List[int]] = None,
        full_scan: bool = False,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ScanProgress] = None,
    ) -> List[DiscoveredServiceResult]:
        """
        Scan every host a target expands to.

        Raises:
            InvalidTargetError: malformed target or more hosts than SCAN_MAX_HOSTS
        """
        hosts = expand_target(target)
        port_list = resolve_ports(ports, full_scan)
        if progress is not None:
            progress.total_hosts = len(hosts)
            progress.total_ports = len(hosts) * len(port_list)

        logger.info("Scanning %s: %d hosts x %d ports", target, len(hosts), len(port_list))
        semaphore = asyncio.Semaphore(self.host_concurrency)

        async def run_host(host: str) -> List[DiscoveredServiceResult]:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return []
                try:
                    return await self.scan_host(host, port_list, False, cancel_event, progress)
                except Exception as e:
                    logger.warning("Scan of host %s failed: %s", host, e)
                    return []
                finally:
                    if progress is not None:
                        progress.scanned_hosts += 1

        per_host = await asyncio.gather(*(run_host(host) for host in hosts))
        results = [result for host_results in per_host for result in host_results]
        results.sort(key=lambda r: (SubnetCalculator.ip_sort_key(r.host_address), r.port))

        logger.info("Scan of %s found %d open services", target, len(results))
        return results

    async def quick_scan(
        self,
        target: str,
        deadline: Optional[float] = None,
        ports: Optional[List[int]] = None,
    ) -> List[DiscoveredServiceResult]:
        """
        Common-port scan that stops issuing probes once the deadline passes.

        Probes already in flight finish within their own timeouts, so whatever
        was found before the deadline is still returned.
        """
        deadline = deadline or settings.QUICK_SCAN_TIMEOUT_SECONDS
        cancel_event = threading.Event()
        timer = asyncio.get_running_loop().call_later(deadline, cancel_event.set)
        try:
            return await self.scan_range(target, ports or list(COMMON_PORTS), False, cancel_event)
        finally:
            timer.cancel()
            if cancel_event.is_set():
                logger.info("Quick scan of %s hit its %ss deadline, returning partial results", target, deadline)


scan_orchestrator = ScanOrchestrator()
