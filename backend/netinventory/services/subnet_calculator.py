import ipaddress
import logging
import socket
import struct
from typing import Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SubnetCalculator:
    """IPv4 address arithmetic shared by target expansion and address planning.

    Addresses are handled as 32-bit unsigned integers built from the
    big-endian address bytes so that CIDR enumeration and range iteration are
    plain integer loops.
    """

    @staticmethod
    def ip_to_int(ip: str) -> int:
        if not SubnetCalculator.is_ipv4(ip):
            raise ValueError(f"'{ip}' is not a valid IPv4 address")
        return struct.unpack("!I", socket.inet_aton(ip))[0]

    @staticmethod
    def int_to_ip(value: int) -> str:
        return socket.inet_ntoa(struct.pack("!I", value & 0xFFFFFFFF))

    @staticmethod
    def is_ipv4(value: Optional[str]) -> bool:
        """Strict dotted-quad check; ``inet_aton`` alone accepts short forms like ``10.1``."""
        if not value:
            return False
        try:
            ipaddress.IPv4Address(value)
            return True
        except ValueError:
            return False

    @staticmethod
    def parse_cidr(cidr: str) -> Tuple[int, int]:
        """
        Split ``a.b.c.d/nn`` into (network integer, prefix length).

        The base address is masked down to the network address, so
        ``192.168.1.77/24`` is treated as ``192.168.1.0/24``.
        """
        if "/" not in cidr:
            raise ValueError(f"'{cidr}' is not in CIDR notation")

        base, prefix_text = cidr.strip().split("/", 1)
        if not SubnetCalculator.is_ipv4(base):
            raise ValueError(f"'{base}' is not a valid IPv4 address")
        if not prefix_text.isdigit():
            raise ValueError(f"'{prefix_text}' is not a valid prefix length")

        prefix = int(prefix_text)
        if prefix < 0 or prefix > 32:
            raise ValueError(f"Prefix length {prefix} is out of range 0-32")

        mask = (0xFFFFFFFF << (32 - prefix)) & 0xFFFFFFFF
        return SubnetCalculator.ip_to_int(base) & mask, prefix

    @staticmethod
    def normalize_cidr(cidr: str) -> str:
        network_int, prefix = SubnetCalculator.parse_cidr(cidr)
        return f"{SubnetCalculator.int_to_ip(network_int)}/{prefix}"

    @staticmethod
    def host_count(prefix: int) -> int:
        """Usable host count, network and broadcast excluded (0 for /31 and /32)."""
        return max(0, (1 << (32 - prefix)) - 2)

    @staticmethod
    def iter_hosts(cidr: str) -> Iterator[str]:
        network_int, prefix = SubnetCalculator.parse_cidr(cidr)
        for offset in range(1, SubnetCalculator.host_count(prefix) + 1):
            yield SubnetCalculator.int_to_ip(network_int + offset)

    @staticmethod
    def enumerate_hosts(cidr: str) -> List[str]:
        return list(SubnetCalculator.iter_hosts(cidr))

    @staticmethod
    def ip_range(start: str, end: str) -> List[str]:
        """Every address from start to end inclusive; empty when start > end."""
        first = SubnetCalculator.ip_to_int(start)
        last = SubnetCalculator.ip_to_int(end)
        return [SubnetCalculator.int_to_ip(value) for value in range(first, last + 1)]

    @staticmethod
    def contains(cidr: str, ip: str) -> bool:
        if not SubnetCalculator.is_ipv4(ip):
            return False
        network_int, prefix = SubnetCalculator.parse_cidr(cidr)
        mask = (0xFFFFFFFF << (32 - prefix)) & 0xFFFFFFFF
        return SubnetCalculator.ip_to_int(ip) & mask == network_int

    @staticmethod
    def ip_sort_key(value: str) -> Tuple[int, int, str]:
        """Numeric ordering for IPv4 literals; hostnames sort after them by name."""
        if SubnetCalculator.is_ipv4(value):
            return (0, SubnetCalculator.ip_to_int(value), "")
        return (1, 0, value or "")

    @staticmethod
    def calculate_subnet_metrics(cidr: str) -> Dict[str, object]:
        """
        Calculate metrics for a subnet CIDR

        Returns:
            Dict containing total_addresses, usable_addresses, prefix_length,
            network_address, broadcast_address, subnet_mask
        """
        try:
            network_int, prefix = SubnetCalculator.parse_cidr(cidr)
        except ValueError as e:
            logger.error("Invalid CIDR format '%s': %s", cidr, e)
            return {
                'total_addresses': 0,
                'usable_addresses': 0,
                'prefix_length': 0,
                'network_address': '',
                'broadcast_address': '',
                'subnet_mask': '',
            }

        size = 1 << (32 - prefix)
        mask = (0xFFFFFFFF << (32 - prefix)) & 0xFFFFFFFF
        return {
            'total_addresses': size,
            'usable_addresses': SubnetCalculator.host_count(prefix),
            'prefix_length': prefix,
            'network_address': SubnetCalculator.int_to_ip(network_int),
            'broadcast_address': SubnetCalculator.int_to_ip(network_int + size - 1),
            'subnet_mask': SubnetCalculator.int_to_ip(mask),
        }

    @staticmethod
    def calculate_utilization_percentage(used_count: int, total_count: int) -> float:
        """Share of usable addresses in use; 0 for an empty address space"""
        if total_count <= 0:
            return 0.0
        return used_count / total_count * 100
