"""
IP Address Trie (Radix Tree) for subnet lookups.

Used by device reconciliation to find which administrator-defined subnet an
observed address belongs to without scanning every subnet row.
"""

import logging
from typing import Dict, List, Optional, Set

from netinventory.db.models import Subnet
from netinventory.services.subnet_calculator import SubnetCalculator

logger = logging.getLogger(__name__)


class TrieNode:
    """A node in the IP trie representing a network prefix."""

    def __init__(self):
        self.subnets: Set[Subnet] = set()  # Subnets that match this exact prefix
        self.children: Dict[int, "TrieNode"] = {}  # 0 or 1 for binary trie

    def add_subnet(self, subnet: Subnet):
        self.subnets.add(subnet)


class IPTrie:
    """
    IPv4 trie keyed on network bits.

    Time complexity: O(32) per lookup regardless of the number of subnets.
    """

    def __init__(self, subnets: Optional[List[Subnet]] = None):
        self.root = TrieNode()
        for subnet in subnets or []:
            self.add_subnet(subnet)

    def clear(self):
        self.root = TrieNode()

    def add_subnet(self, subnet: Subnet):
        """Add a subnet to the trie."""
        try:
            network_int, prefix_length = SubnetCalculator.parse_cidr(subnet.network)
        except ValueError as e:
            # Skip invalid CIDR blocks
            logger.warning("Invalid CIDR block %s: %s", subnet.network, e)
            return

        current = self.root
        for i in range(prefix_length):
            # Extract bit at position (31-i) from left
            bit = (network_int >> (31 - i)) & 1
            if bit not in current.children:
                current.children[bit] = TrieNode()
            current = current.children[bit]

        current.add_subnet(subnet)

    def find_matching_subnets(self, ip_address: str) -> List[Subnet]:
        """
        Find all subnets that contain the given IP address.

        Args:
            ip_address: IP address to look up

        Returns:
            Containing subnets, most specific (longest prefix) first
        """
        if not SubnetCalculator.is_ipv4(ip_address):
            return []

        ip_int = SubnetCalculator.ip_to_int(ip_address)
        current = self.root
        matches: List[Subnet] = sorted(current.subnets, key=lambda s: s.id or 0)

        for i in range(32):
            bit = (ip_int >> (31 - i)) & 1
            if bit not in current.children:
                break
            current = current.children[bit]
            # Longer prefix matches go in front
            matches = sorted(current.subnets, key=lambda s: s.id or 0) + matches

        return matches

    def find_best_match(self, ip_address: str) -> Optional[Subnet]:
        matches = self.find_matching_subnets(ip_address)
        return matches[0] if matches else None

    def get_stats(self) -> dict:
        return {
            'nodes': self._count_nodes(self.root),
            'total_subnets': self._count_subnets(self.root),
        }

    def _count_nodes(self, node: TrieNode) -> int:
        count = 1
        for child in node.children.values():
            count += self._count_nodes(child)
        return count

    def _count_subnets(self, node: TrieNode) -> int:
        count = len(node.subnets)
        for child in node.children.values():
            count += self._count_subnets(child)
        return count
