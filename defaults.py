#!/usr/bin/env python3
# filename: defaults.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 3.0.0
# -----------------------------------------------------------------------------
"""
Default configuration values - single source of truth.
"""

import copy

DEFAULT_CONFIG = {
    'server': {
        'bind_ip': ['0.0.0.0'],
        'port_udp': [53],
        'port_tcp': [53],
        'udp_concurrency': 1000,
        'data_dir': './data'
    },
    'upstream': {
        'servers': ['udp://9.9.9.9:53', 'udp://149.112.112.112:53'],
        'timeout': 5
    },
    'cache': {
        'size': 10000,
        'gc_interval': 300,
        'negative_ttl': 60,
        'min_ttl': 0,
        'max_ttl': 86400
    },
    'logging': {
        'level': 'INFO',
        'enable_console': True,
        'console_timestamp': True,
        'enable_file': False,
        'file_path': './dns_fallback.log',
        'enable_syslog': False,
        'syslog_address': '/dev/log',
        'syslog_protocol': 'UDP'
    },
    'fallback': None
}


def merge_with_defaults(config: dict) -> dict:
    """
    Merge user configuration with defaults.

    Args:
        config: User configuration dictionary

    Returns:
        Merged configuration with defaults filled in
    """
    merged = copy.deepcopy(DEFAULT_CONFIG)

    for key, value in (config or {}).items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value

    return merged


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base"""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
