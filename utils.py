#!/usr/bin/env python3
# filename: utils.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 1.2.0
# -----------------------------------------------------------------------------
"""
Logging setup and small helpers shared by all modules.
"""

import logging
import logging.handlers
import ipaddress

ROOT_LOGGER = 'DNSFallback'

# Global logger dictionary
_loggers = {}


def setup_logger(config):
    """Configure the DNSFallback logger tree from the 'logging' config section."""
    log_config = config.get('logging', {}) or {}
    level_str = str(log_config.get('level', 'INFO')).upper()
    level = getattr(logging, level_str, logging.INFO)

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if log_config.get('enable_console', True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        if log_config.get('console_timestamp', True):
            fmt = '%(asctime)s [%(levelname)s] [%(name)s] %(message)s'
        else:
            fmt = '[%(levelname)s] [%(name)s] %(message)s'
        console_handler.setFormatter(logging.Formatter(fmt))
        root_logger.addHandler(console_handler)

    if log_config.get('enable_file', False):
        file_path = log_config.get('file_path', './dns_fallback.log')
        try:
            file_handler = logging.FileHandler(file_path)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] [%(name)s] %(message)s'))
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Failed to setup file logging: {e}")

    if log_config.get('enable_syslog', False):
        try:
            syslog_addr = log_config.get('syslog_address', '/dev/log')
            if syslog_addr.startswith('/'):
                syslog_handler = logging.handlers.SysLogHandler(address=syslog_addr)
            else:
                host, port = syslog_addr.rsplit(':', 1)
                protocol = str(log_config.get('syslog_protocol', 'UDP')).upper()
                socktype = logging.handlers.socket.SOCK_DGRAM if protocol == 'UDP' else logging.handlers.socket.SOCK_STREAM
                syslog_handler = logging.handlers.SysLogHandler(address=(host, int(port)), socktype=socktype)
            syslog_handler.setLevel(logging.DEBUG)
            syslog_handler.setFormatter(logging.Formatter('[%(name)s] %(message)s'))
            root_logger.addHandler(syslog_handler)
        except (OSError, ValueError) as e:
            print(f"Failed to setup syslog: {e}")

    return root_logger


def get_logger(name):
    """Get or create a logger below the DNSFallback root."""
    full_name = f"{ROOT_LOGGER}.{name}"
    if full_name not in _loggers:
        _loggers[full_name] = logging.getLogger(full_name)
    return _loggers[full_name]


def enable_debug(name):
    """Force DEBUG on one logger family (used by the 'debug' fallback flag)."""
    get_logger(name).setLevel(logging.DEBUG)


class ContextAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with request context."""
    def process(self, msg, kwargs):
        ctx = self.extra
        prefix_parts = []
        if 'id' in ctx:
            prefix_parts.append(f"[ID:{ctx['id']}]")
        if 'ip' in ctx:
            prefix_parts.append(f"[IP:{ctx['ip']}]")
        if 'proto' in ctx:
            prefix_parts.append(f"[PROTO:{ctx['proto']}]")

        prefix = ' '.join(prefix_parts)
        return f"{prefix} {msg}" if prefix else msg, kwargs


def get_server_ips(config):
    """
    Get the list of IPs to bind to from server.bind_ip.
    Invalid and duplicate entries are dropped, order is preserved.
    """
    logger = get_logger("Utils")
    bind_ips = config.get('server', {}).get('bind_ip') or []
    if isinstance(bind_ips, str):
        bind_ips = [bind_ips]

    unique_ips = []
    for ip in bind_ips:
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            logger.warning(f"Ignoring invalid bind_ip '{ip}'")
            continue
        if ip not in unique_ips:
            unique_ips.append(ip)

    if unique_ips:
        logger.info(f"Resolved {len(unique_ips)} unique IPs for binding: {unique_ips}")
    else:
        logger.warning("No IPs resolved - check bind_ip configuration")

    return unique_ips
