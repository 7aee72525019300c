#!/usr/bin/env python3
"""
Run a one-off discovery scan from the shell and print what was found.

Examples:
    python scripts/run_scan.py 192.168.1.0/24
    python scripts/run_scan.py 10.0.0.10-20 --ports 22,80,443
    python scripts/run_scan.py nas.local --quick
"""

import argparse
import asyncio
import logging
import os
import sys

# Running from a checkout: make the backend package importable
script_dir = os.path.dirname(__file__)
backend_dir = os.path.join(os.path.dirname(script_dir), 'backend')
if os.path.isdir(backend_dir):
    sys.path.insert(0, backend_dir)

from netinventory.core.exceptions import InvalidTargetError
from netinventory.services.port_catalog import COMMON_PORTS
from netinventory.services.scan_orchestrator import ScanProgress, expand_target, scan_orchestrator


def parse_ports(value):
    try:
        return [int(part) for part in value.split(',') if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port list: {value}")


def main():
    parser = argparse.ArgumentParser(description='Scan a host, dash range or CIDR block for open TCP services')
    parser.add_argument('target', help='Host, a.b.c.start-end range or CIDR block')
    parser.add_argument('--ports', type=parse_ports, help='Comma-separated port list')
    parser.add_argument('--quick', action='store_true', help='Scan only the common ports')
    parser.add_argument('--full', action='store_true', help='Scan all 65535 ports')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    ports = args.ports or (list(COMMON_PORTS) if args.quick else None)

    try:
        hosts = expand_target(args.target)
    except InvalidTargetError as e:
        print(f"Error: {e}")
        return 2

    print(f"Scanning {len(hosts)} host(s) for {args.target}")
    print("=" * 60)

    progress = ScanProgress()
    results = asyncio.run(scan_orchestrator.scan_range(args.target, ports, args.full, None, progress))

    for result in results:
        banner = f"  {result.banner[:80]}" if result.banner else ""
        print(f"{result.host_address:<16} {result.port:>5}/tcp  {result.service_type:<22} "
              f"{result.response_time_ms:>7.1f} ms{banner}")

    print("=" * 60)
    print(f"{len(results)} open service(s) on {progress.hosts_up}/{progress.total_hosts} responding host(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
