#!/usr/bin/env python3
# filename: ip_ranges.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 1.0.0
# -----------------------------------------------------------------------------
"""
IPv4 CIDR range table.

Compiles "a.b.c.d/prefix" strings into inclusive [start, end] integer
ranges held in an IntervalTree. Built once at startup, read-only after.
Only IPv4 is range-checked.
"""

import ipaddress
from typing import Iterable, List, Optional, Tuple, Union

from intervaltree import IntervalTree

from utils import get_logger

logger = get_logger("Fallback.Ranges")

MAX_IPV4 = 0xFFFFFFFF


def parse_ipv4_cidr(entry: str) -> Optional[Tuple[int, int]]:
    """
    Parse "a.b.c.d/prefix" into (start, end), inclusive.
    Returns None for anything malformed.
    """
    if not isinstance(entry, str) or '/' not in entry:
        return None

    addr_str, prefix_str = entry.strip().split('/', 1)
    octets = addr_str.split('.')
    if len(octets) != 4:
        return None

    ip_int = 0
    for octet in octets:
        if not (octet.isascii() and octet.isdigit()) or len(octet) > 3:
            return None
        value = int(octet)
        if value > 255:
            return None
        ip_int = (ip_int << 8) | value

    prefix_str = prefix_str.strip()
    if not (prefix_str.isascii() and prefix_str.isdigit()):
        return None
    prefix = int(prefix_str)
    if prefix > 32:
        return None

    mask = (MAX_IPV4 << (32 - prefix)) & MAX_IPV4
    start = ip_int & mask
    end = ip_int | (mask ^ MAX_IPV4)
    return start, end


def _to_ipv4_int(address) -> Optional[int]:
    if isinstance(address, int) and not isinstance(address, bool):
        return address if 0 <= address <= MAX_IPV4 else None
    if isinstance(address, ipaddress.IPv4Address):
        return int(address)
    if isinstance(address, str):
        try:
            ip = ipaddress.ip_address(address.strip())
        except ValueError:
            return None
        if ip.version == 4:
            return int(ip)
    return None


class RangeTable:
    """Set of contaminated IPv4 ranges."""

    def __init__(self):
        self._tree = IntervalTree()

    @classmethod
    def build(cls, entries: Optional[Iterable[str]]) -> 'RangeTable':
        table = cls()
        if not entries:
            return table

        skipped = 0
        for entry in entries:
            if not table.add(entry):
                skipped += 1

        logger.info(f"IP range table built: {len(table)} ranges ({skipped} skipped)")
        return table

    def add(self, entry: str) -> bool:
        parsed = parse_ipv4_cidr(entry)
        if parsed is None:
            logger.warning(f"Invalid IPv4 CIDR '{entry}', skipping")
            return False

        start, end = parsed
        # IntervalTree intervals are half-open
        self._tree.addi(start, end + 1, entry.strip())
        logger.debug(f"Range {entry.strip()} -> [{start}, {end}]")
        return True

    def contains(self, address: Union[str, int, ipaddress.IPv4Address]) -> bool:
        """True if the IPv4 address falls inside any stored range."""
        if not self._tree:
            return False
        ip_int = _to_ipv4_int(address)
        if ip_int is None:
            return False
        return bool(self._tree.at(ip_int))

    def match(self, address) -> Optional[str]:
        """Return the CIDR string covering the address, if any."""
        ip_int = _to_ipv4_int(address)
        if ip_int is None or not self._tree:
            return None
        hits = self._tree.at(ip_int)
        if not hits:
            return None
        return sorted(hits)[0].data

    @property
    def ranges(self) -> List[Tuple[int, int]]:
        return sorted((iv.begin, iv.end - 1) for iv in self._tree)

    def __len__(self):
        return len(self._tree)

    def __bool__(self):
        return len(self._tree) > 0

    def __contains__(self, address):
        return self.contains(address)
