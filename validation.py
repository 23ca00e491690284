#!/usr/bin/env python3
# filename: validation.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 1.1.0
# -----------------------------------------------------------------------------
"""
Validation helpers for configuration values.
"""

import ipaddress


def is_valid_ip(ip_str) -> bool:
    """
    Validate an IPv4/IPv6 address (handles [IPv6] notation).
    """
    if not isinstance(ip_str, str):
        return False
    cleaned = ip_str.strip().strip('[]')
    try:
        ipaddress.ip_address(cleaned)
        return True
    except ValueError:
        return False


def is_valid_port(port, allow_zero=False) -> bool:
    """Port number check. Zero means 'protocol default' where allowed."""
    if isinstance(port, bool) or not isinstance(port, int):
        return False
    low = 0 if allow_zero else 1
    return low <= port <= 65535


def is_valid_country(code) -> bool:
    """Two-letter ISO 3166 alpha-2 code."""
    return isinstance(code, str) and len(code.strip()) == 2 and code.strip().isalpha()


def is_valid_domain(domain: str, allow_underscores: bool = True) -> bool:
    """
    Validate domain format.

    Args:
        domain: Normalized domain name (no trailing dot)
        allow_underscores: Allow underscores in labels (SRV/DKIM style names)

    Returns:
        True if valid domain
    """
    if not domain or len(domain) > 253:
        return False

    if any(c in domain for c in [' ', '\t', '\n', '\r', '|', '\\', '/', '*', '+']):
        return False

    for label in domain.split('.'):
        if not label or len(label) > 63:
            return False
        if label.startswith('-') or label.endswith('-'):
            return False

        if allow_underscores:
            if not all(c.isascii() and (c.isalnum() or c in ('-', '_')) for c in label):
                return False
        else:
            if not all(c.isascii() and (c.isalnum() or c == '-') for c in label):
                return False

    return True
