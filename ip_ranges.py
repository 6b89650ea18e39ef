#!/usr/bin/env python3
# filename: ip_ranges.py
# -----------------------------------------------------------------------------
# Project: SmartDNS Race Proxy
# Version: 1.0.2 (IntervalTree Backend)
# -----------------------------------------------------------------------------
"""
IP Range Matcher for CDN and domestic route lists (IPv4 only).
"""

import sys
import ipaddress
from typing import Iterable, Optional

from utils import get_logger, read_list_file, ListSourceUnavailable
from validation import is_valid_ipv4_cidr_line

try:
    from intervaltree import IntervalTree
except ImportError:
    print("FATAL: 'intervaltree' required. Install: pip install intervaltree")
    sys.exit(1)

logger = get_logger("IPRanges")


class IPRangeSet:
    def __init__(self, source: Optional[str] = None):
        self.tree = IntervalTree()
        self.source = source or "<memory>"

    @classmethod
    def from_file(cls, file_path: Optional[str]) -> "IPRangeSet":
        """Load a range set from a list file. A missing source yields an empty set."""
        ranges = cls(file_path)
        if not file_path:
            logger.info("No IP range list configured, range set is empty")
            return ranges
        try:
            ranges.load(read_list_file(file_path), numbered=True)
        except ListSourceUnavailable as e:
            logger.warning(f"Error occurred while reading {e}; IP range list is empty")
            return ranges
        logger.info(f"Loaded {len(ranges)} IP ranges from {file_path}")
        return ranges

    def load(self, lines: Iterable, numbered: bool = False) -> int:
        """
        Add every 'a.b.c.d' or 'a.b.c.d/nn' line. Malformed lines are dropped
        with a warning.

        Returns:
            Number of prefixes added
        """
        added = 0
        for idx, item in enumerate(lines, 1):
            line_num, line = item if numbered else (idx, item)
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            if not is_valid_ipv4_cidr_line(line):
                logger.warning(
                    f"File {self.source}:{line_num} does not contain a valid IPv4 address "
                    f"with proper optional CIDR notation: '{line}'"
                )
                continue
            self.add(line)
            added += 1
        return added

    def add(self, cidr: str):
        net = ipaddress.IPv4Network(cidr, strict=False)
        start_int = int(net.network_address)
        end_int = int(net.broadcast_address) + 1
        self.tree.addi(start_int, end_int, cidr)

    def contains(self, address: str) -> bool:
        try:
            ip_obj = ipaddress.ip_address(address)
        except ValueError:
            return False
        if ip_obj.version != 4:
            return False
        return bool(self.tree[int(ip_obj)])

    def contains_any(self, addresses: Iterable[str]) -> bool:
        return any(self.contains(addr) for addr in addresses)

    def __len__(self) -> int:
        return len(self.tree)
