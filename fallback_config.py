#!/usr/bin/env python3
# filename: fallback_config.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 1.2.0
# -----------------------------------------------------------------------------
"""
Typed settings for the fallback engine.

Keys are case-insensitive and may be camelCase or snake_case
(exceptDomains == except_domains == EXCEPTDOMAINS). A malformed section
yields None from load_fallback_config() and the engine runs as a
passthrough. Individual bad entries are skipped with a warning.
"""

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from urllib.parse import quote, urlparse

from utils import get_logger
from validation import is_valid_country, is_valid_port

logger = get_logger("Fallback.Config")


class ConfigError(Exception):
    """Raised when the fallback section cannot be used at all"""
    pass


class Protocol(Enum):
    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"
    HTTPS = "https"
    HTTPS_JSON = "httpsjson"

    @classmethod
    def from_text(cls, value) -> 'Protocol':
        if value is None:
            return cls.UDP
        key = str(value).strip().lower().replace('-', '').replace('_', '')
        aliases = {'dot': 'tls', 'doh': 'https', 'dohjson': 'httpsjson', 'json': 'httpsjson'}
        key = aliases.get(key, key)
        for proto in cls:
            if proto.value == key:
                return proto
        raise ValueError(f"unsupported protocol '{value}'")

    @property
    def default_port(self) -> int:
        return DEFAULT_PORTS[self]


DEFAULT_PORTS = {
    Protocol.UDP: 53,
    Protocol.TCP: 53,
    Protocol.TLS: 853,
    Protocol.HTTPS: 443,
    Protocol.HTTPS_JSON: 443,
}


class ProxyType(Enum):
    HTTP = "http"
    SOCKS5 = "socks5"


@dataclass(frozen=True)
class NameServer:
    ip: str
    port: int
    protocol: Protocol = Protocol.UDP
    host: Optional[str] = None
    path: str = ''

    @property
    def id(self) -> str:
        target = self.host or self.ip
        if ':' in target:
            target = f"[{target}]"
        return f"{self.protocol.value}://{target}:{self.port}{self.path}"

    @property
    def url(self) -> str:
        """HTTPS endpoint with the pinned IP in place of the host name."""
        ip = f"[{self.ip}]" if ':' in self.ip else self.ip
        return f"https://{ip}:{self.port}{self.path or '/dns-query'}"


@dataclass(frozen=True)
class ProxySettings:
    type: ProxyType
    address: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def url(self) -> str:
        scheme = 'http' if self.type is ProxyType.HTTP else 'socks5'
        host = f"[{self.address}]" if ':' in self.address else self.address
        auth = ''
        if self.username is not None:
            auth = f"{quote(self.username, safe='')}:{quote(self.password or '', safe='')}@"
        return f"{scheme}://{auth}{host}:{self.port}"


@dataclass(frozen=True)
class GeoSettings:
    is_enabled: bool = False
    subscribe_url: Optional[str] = None
    countries: FrozenSet[str] = frozenset()

    @property
    def active(self) -> bool:
        return self.is_enabled and bool(self.countries)


@dataclass(frozen=True)
class FallbackSettings:
    debug: bool = False
    domains: Tuple[str, ...] = ()
    except_domains: Tuple[str, ...] = ()
    ipcidr: Tuple[str, ...] = ()
    geo: GeoSettings = field(default_factory=GeoSettings)
    name_servers: Tuple[NameServer, ...] = ()
    proxy: Optional[ProxySettings] = None


# =========================================================================
# PARSING
# =========================================================================

def _key(name: str) -> str:
    return name.lower().replace('_', '').replace('-', '')


def _fold(section, where: str) -> Dict[str, Any]:
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(section).__name__}")
    return {_key(str(k)): v for k, v in section.items()}


def _bool(value, where: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false', 'yes', 'no', '1', '0'):
        return value.strip().lower() in ('true', 'yes', '1')
    raise ConfigError(f"{where}: expected a boolean, got {value!r}")


def _str_list(value, where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{where}: expected a list, got {type(value).__name__}")
    items = []
    for item in value:
        if not isinstance(item, str):
            logger.warning(f"{where}: ignoring non-string entry {item!r}")
            continue
        if item.strip():
            items.append(item.strip())
    return tuple(items)


def _port(value, where: str) -> int:
    if value is None or value == '':
        return 0
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{where}: invalid port {value!r}")
    if not is_valid_port(port, allow_zero=True):
        raise ValueError(f"{where}: port {port} out of range")
    return port


def parse_geo(raw) -> GeoSettings:
    geo = _fold(raw, 'geo')
    url = geo.get('subscribeurl')
    if url is not None:
        url = str(url).strip() or None
    if url:
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            logger.warning(f"geo.subscribeUrl '{url}' is not an http(s) URL, refresh disabled")
            url = None

    countries = set()
    for code in _str_list(geo.get('countries'), 'geo.countries'):
        if not is_valid_country(code):
            logger.warning(f"geo.countries: ignoring invalid country code '{code}'")
            continue
        countries.add(code.upper())

    return GeoSettings(
        is_enabled=_bool(geo.get('isenabled', geo.get('enabled')), 'geo.isEnabled'),
        subscribe_url=url,
        countries=frozenset(countries),
    )


def parse_name_server(raw) -> NameServer:
    """Build a NameServer from one nameServers entry. Raises ValueError."""
    entry = _fold(raw, 'nameServers[]')
    ip_str = entry.get('ip')
    if not isinstance(ip_str, str):
        raise ValueError("missing ip")
    try:
        ip = str(ipaddress.ip_address(ip_str.strip().strip('[]')))
    except ValueError:
        raise ValueError(f"invalid ip '{ip_str}'")

    protocol = Protocol.from_text(entry.get('protocol'))
    port = _port(entry.get('port'), f"nameServer {ip}") or protocol.default_port

    url = entry.get('url')
    host = None
    path = ''
    if url:
        url = str(url).strip()
        if protocol in (Protocol.HTTPS, Protocol.HTTPS_JSON):
            parsed = urlparse(url)
            if parsed.scheme != 'https' or not parsed.hostname:
                raise ValueError(f"invalid url '{url}'")
            host = parsed.hostname
            path = parsed.path or '/dns-query'
            if parsed.query:
                path = f"{path}?{parsed.query}"
            if parsed.port and not entry.get('port'):
                port = parsed.port
        else:
            # TLS (and plain) servers take a bare host name used for SNI
            host = urlparse(url).hostname if '://' in url else url.split(':')[0]
            if not host:
                raise ValueError(f"invalid url '{url}'")
    elif protocol in (Protocol.HTTPS, Protocol.HTTPS_JSON):
        raise ValueError(f"{protocol.name} nameserver requires url")

    return NameServer(ip=ip, port=port, protocol=protocol, host=host, path=path)


def parse_proxy(raw) -> Optional[ProxySettings]:
    proxy = _fold(raw, 'proxy')
    if not proxy:
        return None
    try:
        proxy_type = ProxyType(str(proxy.get('type', 'http')).strip().lower())
    except ValueError:
        raise ValueError(f"unsupported proxy type {proxy.get('type')!r}")

    address = proxy.get('address')
    if not isinstance(address, str) or not address.strip():
        raise ValueError("proxy address missing")
    port = _port(proxy.get('port'), 'proxy')
    if port == 0:
        raise ValueError("proxy port missing")

    username = proxy.get('username')
    password = proxy.get('password')
    if username is not None and not isinstance(username, str):
        raise ValueError("proxy username must be a string")
    if password is not None and not isinstance(password, str):
        raise ValueError("proxy password must be a string")
    if password is not None and username is None:
        raise ValueError("proxy password given without username")

    return ProxySettings(proxy_type, address.strip(), port, username, password)


def parse_fallback_config(raw) -> FallbackSettings:
    """Parse the fallback section. Raises ConfigError on structural problems."""
    cfg = _fold(raw, 'fallback')

    servers: List[NameServer] = []
    raw_servers = cfg.get('nameservers')
    if raw_servers is not None and not isinstance(raw_servers, list):
        raise ConfigError("nameServers: expected a list")
    for item in raw_servers or []:
        try:
            servers.append(parse_name_server(item))
        except (ValueError, ConfigError) as e:
            logger.warning(f"Skipping nameServer {item!r}: {e}")

    if raw_servers and not servers:
        logger.error("There is no available NameServer, fallback resolution disabled")

    proxy = None
    try:
        proxy = parse_proxy(cfg.get('proxy'))
    except (ValueError, ConfigError) as e:
        logger.error(f"Proxy configuration ignored: {e}")

    return FallbackSettings(
        debug=_bool(cfg.get('debug', cfg.get('isdebug')), 'debug'),
        domains=_str_list(cfg.get('domains'), 'domains'),
        except_domains=_str_list(cfg.get('exceptdomains'), 'exceptDomains'),
        ipcidr=_str_list(cfg.get('ipcidr'), 'ipcidr'),
        geo=parse_geo(cfg.get('geo')),
        name_servers=tuple(servers),
        proxy=proxy,
    )


def load_fallback_config(raw) -> Optional[FallbackSettings]:
    """parse_fallback_config() that logs and returns None instead of raising."""
    if raw is None:
        logger.info("No fallback section configured, running as passthrough")
        return None
    try:
        settings = parse_fallback_config(raw)
    except ConfigError as e:
        logger.error(f"Read fallback config failed: {e}")
        return None

    logger.info(
        f"Fallback config: {len(settings.domains)} domain rules, "
        f"{len(settings.except_domains)} except rules, {len(settings.ipcidr)} CIDRs, "
        f"geo={'on' if settings.geo.is_enabled else 'off'}, "
        f"{len(settings.name_servers)} nameservers, proxy={'yes' if settings.proxy else 'no'}"
    )
    return settings
