#!/usr/bin/env python3
# filename: config_validator.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 3.0.0
# -----------------------------------------------------------------------------
"""
Configuration Validation Module
"""

import os
from typing import Dict, List, Tuple, Any

from domain_matcher import DomainRule
from fallback_config import ConfigError, parse_fallback_config
from ip_ranges import parse_ipv4_cidr
from upstream_manager import parse_server_url
from utils import get_logger
from validation import is_valid_ip

logger = get_logger("ConfigValidator")


class ConfigValidator:
    """Validates DNS server configuration for common errors and inconsistencies"""

    def __init__(self):
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self, config: Dict[str, Any]) -> Tuple[bool, List[str], List[str]]:
        """
        Validate entire configuration.

        Returns:
            (is_valid, errors, warnings)
        """
        self.errors = []
        self.warnings = []

        if not isinstance(config, dict):
            self.errors.append("Configuration must be a dictionary")
            return False, self.errors, self.warnings

        self._validate_logging(config.get('logging', {}))
        self._validate_server(config.get('server', {}))
        self._validate_upstream(config.get('upstream', {}))
        self._validate_cache(config.get('cache', {}))
        self._validate_fallback(config.get('fallback'))

        is_valid = len(self.errors) == 0

        if self.errors:
            print("\n❌ CONFIGURATION ERRORS:")
            for i, err in enumerate(self.errors, 1):
                print(f"  {i}. {err}")

        if self.warnings:
            print("\n⚠️  CONFIGURATION WARNINGS:")
            for i, warn in enumerate(self.warnings, 1):
                print(f"  {i}. {warn}")

        if is_valid:
            logger.info("Configuration validation PASSED")
        else:
            logger.error(f"Configuration validation FAILED with {len(self.errors)} error(s)")

        if self.warnings:
            logger.warning(f"Configuration has {len(self.warnings)} warning(s)")

        return is_valid, self.errors, self.warnings

    # =========================================================================
    # LOGGING SECTION
    # =========================================================================
    def _validate_logging(self, log_cfg: Dict[str, Any]):
        if not isinstance(log_cfg, dict):
            if log_cfg is not None:
                self.errors.append("logging: Must be a dictionary")
            return

        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        level = log_cfg.get('level', 'INFO')
        if isinstance(level, str):
            if level.upper() not in valid_levels:
                self.errors.append(f"logging.level: Invalid level '{level}', must be one of {valid_levels}")
        else:
            self.errors.append(f"logging.level: Must be a string, got {type(level).__name__}")

        for bool_key in ['enable_console', 'console_timestamp', 'enable_file', 'enable_syslog']:
            val = log_cfg.get(bool_key)
            if val is not None and not isinstance(val, bool):
                self.errors.append(f"logging.{bool_key}: Must be boolean, got {type(val).__name__}")

        file_path = log_cfg.get('file_path')
        if file_path is not None:
            if not isinstance(file_path, str):
                self.errors.append("logging.file_path: Must be string")
            elif log_cfg.get('enable_file', False):
                parent_dir = os.path.dirname(file_path) or '.'
                if not os.path.isdir(parent_dir):
                    self.warnings.append(f"logging.file_path: Directory '{parent_dir}' does not exist")

        syslog_addr = log_cfg.get('syslog_address')
        if syslog_addr is not None and not isinstance(syslog_addr, str):
            self.errors.append("logging.syslog_address: Must be string")

        syslog_proto = log_cfg.get('syslog_protocol', 'UDP')
        if not isinstance(syslog_proto, str) or syslog_proto.upper() not in ['UDP', 'TCP']:
            self.errors.append(f"logging.syslog_protocol: Must be 'UDP' or 'TCP', got '{syslog_proto}'")

    # =========================================================================
    # SERVER SECTION
    # =========================================================================
    def _validate_server(self, server_cfg: Dict[str, Any]):
        """Validate server networking configuration"""
        if not isinstance(server_cfg, dict):
            if server_cfg is not None:
                self.errors.append("server: Must be a dictionary")
            return

        bind_ips = server_cfg.get('bind_ip', [])
        if bind_ips:
            if isinstance(bind_ips, str):
                bind_ips = [bind_ips]
            if not isinstance(bind_ips, list):
                self.errors.append("server.bind_ip: Must be a string or list")
            else:
                for ip in bind_ips:
                    if not is_valid_ip(ip):
                        self.errors.append(f"server.bind_ip: Invalid IP address '{ip}'")

        for port_key in ['port_udp', 'port_tcp']:
            ports = server_cfg.get(port_key)
            if ports is not None:
                if isinstance(ports, int):
                    ports = [ports]
                if not isinstance(ports, list):
                    self.errors.append(f"server.{port_key}: Must be integer or list")
                else:
                    for port in ports:
                        if isinstance(port, bool) or not isinstance(port, int) or port < 1 or port > 65535:
                            self.errors.append(f"server.{port_key}: Invalid port {port} (must be 1-65535)")

        udp_conc = server_cfg.get('udp_concurrency')
        if udp_conc is not None:
            if not isinstance(udp_conc, int) or udp_conc < 1:
                self.errors.append("server.udp_concurrency: Must be positive integer")

        data_dir = server_cfg.get('data_dir')
        if data_dir is not None:
            if not isinstance(data_dir, str) or not data_dir:
                self.errors.append("server.data_dir: Must be a non-empty string")
            elif os.path.exists(data_dir) and not os.path.isdir(data_dir):
                self.errors.append(f"server.data_dir: '{data_dir}' is not a directory")

    # =========================================================================
    # UPSTREAM SECTION
    # =========================================================================
    def _validate_upstream(self, upstream_cfg: Dict[str, Any]):
        """Validate the direct (first-pass) resolver configuration"""
        if not isinstance(upstream_cfg, dict):
            if upstream_cfg is not None:
                self.errors.append("upstream: Must be a dictionary")
            return

        servers = upstream_cfg.get('servers')
        if servers is not None:
            if isinstance(servers, str):
                servers = [servers]
            if not isinstance(servers, list):
                self.errors.append("upstream.servers: Must be a string or list")
            else:
                usable = [s for s in servers if parse_server_url(s) is not None]
                if len(usable) < len(servers):
                    self.warnings.append(
                        f"upstream.servers: {len(servers) - len(usable)} unusable entr(y/ies) will be skipped")
                if not usable:
                    self.errors.append("upstream.servers: No usable upstream server")

        timeout = upstream_cfg.get('timeout')
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                self.errors.append("upstream.timeout: Must be a positive number")

    # =========================================================================
    # CACHE SECTION
    # =========================================================================
    def _validate_cache(self, cache_cfg: Dict[str, Any]):
        """Validate cache configuration"""
        if not isinstance(cache_cfg, dict):
            if cache_cfg is not None:
                self.errors.append("cache: Must be a dictionary")
            return

        for int_key in ['size', 'gc_interval', 'negative_ttl', 'min_ttl', 'max_ttl']:
            val = cache_cfg.get(int_key)
            if val is not None and (isinstance(val, bool) or not isinstance(val, int) or val < 0):
                self.errors.append(f"cache.{int_key}: Must be non-negative integer")

        min_ttl = cache_cfg.get('min_ttl')
        max_ttl = cache_cfg.get('max_ttl')
        if isinstance(min_ttl, int) and isinstance(max_ttl, int) and max_ttl and min_ttl > max_ttl:
            self.errors.append("cache.min_ttl: Must not exceed cache.max_ttl")

    # =========================================================================
    # FALLBACK SECTION
    # =========================================================================
    def _validate_fallback(self, fallback_cfg):
        """
        Every problem here is a warning. A section that cannot be used at all
        leaves the engine as a passthrough and never stops the host.
        """
        if fallback_cfg is None:
            self.warnings.append("fallback: Section missing, every query is passed through unchecked")
            return

        try:
            settings = parse_fallback_config(fallback_cfg)
        except ConfigError as e:
            self.warnings.append(f"fallback: {e} (fallback disabled, running as passthrough)")
            return

        for key, entries in (('domains', settings.domains), ('exceptDomains', settings.except_domains)):
            for entry in entries:
                if DomainRule.parse(entry) is None:
                    self.warnings.append(f"fallback.{key}: Invalid rule '{entry}' will be ignored")

        for entry in settings.ipcidr:
            if parse_ipv4_cidr(entry) is None:
                self.warnings.append(f"fallback.ipcidr: Invalid IPv4 CIDR '{entry}' will be ignored")

        if not settings.name_servers:
            self.warnings.append("fallback.nameServers: No usable nameserver, fallback is disabled")

        geo = settings.geo
        if geo.is_enabled and not geo.countries:
            self.warnings.append("fallback.geo: Enabled without countries, geo checks are inactive")
        if geo.is_enabled and not geo.subscribe_url:
            self.warnings.append("fallback.geo.subscribeUrl: Not set, the geo database is never refreshed")


def validate_config(config: Dict[str, Any]) -> Tuple[bool, List[str], List[str]]:
    """
    Convenience function to validate configuration.

    Returns:
        (is_valid, errors, warnings)
    """
    validator = ConfigValidator()
    return validator.validate(config)
