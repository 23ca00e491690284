#!/usr/bin/env python3
# filename: domain_utils.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 1.1.0
# -----------------------------------------------------------------------------
"""
Domain name normalization utilities.
"""

from typing import Optional


def normalize_domain(domain) -> str:
    """
    Normalize a domain name to canonical form.

    Accepts plain strings and dns.name.Name objects. Lowercases (ASCII),
    strips whitespace and the trailing root dot.

    Examples:
        >>> normalize_domain("Example.COM.")
        'example.com'
        >>> normalize_domain("  GOOGLE.com  ")
        'google.com'
    """
    if not domain:
        return ""

    return str(domain).strip().lower().rstrip('.')


def strip_first_label(domain_norm: str) -> Optional[str]:
    """
    Return the name with its leftmost label removed, or None for a
    single-label name.

        >>> strip_first_label("a.b.example.com")
        'b.example.com'
    """
    i = domain_norm.find('.')
    if i == -1:
        return None
    return domain_norm[i + 1:]
