#!/usr/bin/env python3
# filename: upstream_manager.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 3.1.0 (Ordered failover, DoH JSON, forward proxy)
# -----------------------------------------------------------------------------
"""
Upstream DNS client over an ordered list of nameservers.

Transports: UDP, TCP, DoT, DoH (RFC 8484) and DoH JSON. Servers are tried in
configured order and the first valid answer wins. An optional HTTP/SOCKS5
forward proxy is applied to every transport (UDP is carried over TCP when
proxied).
"""

import asyncio
import ipaddress
import logging
import socket
import ssl
import time
from typing import Iterable, List, Optional
from urllib.parse import urlparse

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import httpx
import orjson as json

from fallback_config import NameServer, Protocol, ProxySettings, DEFAULT_PORTS
from proxy import open_tunnel
from utils import get_logger

logger = get_logger("Upstream")

DOH_HEADERS = {
    'Content-Type': 'application/dns-message',
    'Accept': 'application/dns-message'
}

DOH_JSON_HEADERS = {
    'Accept': 'application/dns-json'
}


def _is_valid_ip(ip_str: str) -> bool:
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def parse_server_url(s_str: str) -> Optional[NameServer]:
    """
    Parse a primary upstream entry:
      udp://9.9.9.9:53, tcp://1.1.1.1, tls://dns.quad9.net#9.9.9.9,
      https://dns.google/dns-query#8.8.8.8, https-json://dns.google/resolve#8.8.4.4
    A bare address means UDP. Host names need a '#ip' pin.
    """
    if not isinstance(s_str, str) or not s_str.strip():
        logger.warning("Empty upstream server URL, skipping")
        return None
    s_str = s_str.strip()

    forced_ip = None
    if '#' in s_str:
        s_str, candidate_ip = s_str.rsplit('#', 1)
        candidate_ip = candidate_ip.strip().strip('[]')
        if _is_valid_ip(candidate_ip):
            forced_ip = candidate_ip
        else:
            logger.warning(f"Invalid forced IP '{candidate_ip}' in '{s_str}', ignoring")

    to_parse = s_str if '://' in s_str else f"udp://{s_str}"
    try:
        parsed = urlparse(to_parse)
        port = parsed.port
    except ValueError as e:
        logger.warning(f"Failed to parse upstream URL '{s_str}': {e}")
        return None

    try:
        proto = Protocol.from_text(parsed.scheme)
    except ValueError:
        logger.warning(f"Unsupported protocol '{parsed.scheme}' in '{s_str}', skipping")
        return None

    host = parsed.hostname
    if not host:
        logger.warning(f"Missing hostname in '{s_str}', skipping")
        return None

    if forced_ip is None:
        if not _is_valid_ip(host):
            logger.warning(f"Upstream '{s_str}' needs an IP address (use '#ip' to pin a host name), skipping")
            return None
        forced_ip = host
        host = None

    path = ''
    if proto in (Protocol.HTTPS, Protocol.HTTPS_JSON):
        path = parsed.path or ('/dns-query' if proto is Protocol.HTTPS else '/resolve')

    return NameServer(ip=forced_ip, port=port or DEFAULT_PORTS[proto], protocol=proto, host=host, path=path)


def json_to_message(request: dns.message.Message, payload: dict) -> dns.message.Message:
    """Build a wire-format response from a DoH JSON (application/dns-json) reply."""
    response = dns.message.make_response(request)
    response.set_rcode(int(payload.get('Status', dns.rcode.SERVFAIL)))
    if payload.get('AD'):
        response.flags |= dns.flags.AD
    if payload.get('TC'):
        response.flags |= dns.flags.TC

    for key, section in (('Answer', response.answer), ('Authority', response.authority)):
        for rr in payload.get(key) or []:
            name = dns.name.from_text(rr['name'])
            rdtype = int(rr['type'])
            rdata = dns.rdata.from_text(dns.rdataclass.IN, rdtype, rr['data'])
            rrset = response.find_rrset(section, name, dns.rdataclass.IN, rdtype, create=True)
            rrset.add(rdata, int(rr.get('TTL', 0)))
    return response


class UpstreamManager:
    def __init__(self, servers: Iterable[NameServer], proxy: Optional[ProxySettings] = None,
                 timeout: float = 5.0, label: str = "Upstream"):
        self.servers: List[NameServer] = list(servers)
        self.proxy = proxy
        self.timeout = timeout
        self.label = label

        self.ssl_context = ssl.create_default_context()
        self.ssl_context.check_hostname = True
        self.ssl_context.verify_mode = ssl.CERT_REQUIRED

        self.doh_client: Optional[httpx.AsyncClient] = None
        self._doh_init_lock = asyncio.Lock()

        for server in self.servers:
            logger.debug(f"{label}: {server.id} -> {server.ip}")
        logger.info(f"{label}: {len(self.servers)} nameservers configured"
                    + (f", proxy {proxy.type.value}://{proxy.address}:{proxy.port}" if proxy else ""))

    @classmethod
    def from_urls(cls, urls, timeout: float = 5.0, label: str = "Upstream") -> 'UpstreamManager':
        servers = [s for s in (parse_server_url(u) for u in urls or []) if s is not None]
        return cls(servers, timeout=timeout, label=label)

    def __bool__(self):
        return bool(self.servers)

    # =========================================================================
    # SESSION HANDLING
    # =========================================================================

    async def _ensure_doh_client(self) -> httpx.AsyncClient:
        if self.doh_client is not None:
            return self.doh_client

        async with self._doh_init_lock:
            if self.doh_client is None:
                self.doh_client = httpx.AsyncClient(
                    http2=True,
                    verify=self.ssl_context,
                    proxy=self.proxy.url if self.proxy else None,
                    timeout=httpx.Timeout(self.timeout),
                    limits=httpx.Limits(max_keepalive_connections=10, keepalive_expiry=30.0)
                )
                logger.debug(f"{self.label}: DoH client initialized")
        return self.doh_client

    async def close(self):
        if self.doh_client is not None:
            try:
                await self.doh_client.aclose()
            except Exception as e:
                logger.debug(f"Error closing DoH client: {e}")
            self.doh_client = None

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def resolve(self, request: dns.message.Message, req_logger=None) -> Optional[dns.message.Message]:
        """Resolve through the servers in order. Returns None if all fail."""
        log = req_logger or logger
        if not self.servers:
            log.error(f"{self.label}: no nameservers available")
            return None

        wire = request.to_wire()
        query_info = str(request.question[0].name) if request.question else "Query"

        for server in self.servers:
            start_t = time.time()
            try:
                response = await self.query_server(server, request, wire)
            except (OSError, asyncio.TimeoutError, EOFError, httpx.HTTPError,
                    dns.exception.DNSException, ValueError, KeyError) as e:
                log.warning(f"{self.label} error {server.id}: {e}")
                continue

            if response is None:
                continue
            if not request.is_response(response):
                log.warning(f"{self.label}: {server.id} sent a reply that does not match the query")
                continue

            dur_ms = (time.time() - start_t) * 1000
            log.info(f"{self.label}: {query_info} -> {server.id} ({dur_ms:.2f}ms, {dns.rcode.to_text(response.rcode())})")
            return response

        log.error(f"{self.label}: all nameservers failed for {query_info}")
        return None

    async def query_server(self, server: NameServer, request: dns.message.Message,
                           wire: bytes) -> Optional[dns.message.Message]:
        proto = server.protocol

        if proto is Protocol.HTTPS_JSON:
            return await self._doh_json_query(server, request)

        if proto is Protocol.HTTPS:
            data = await self._doh_query(server, wire)
        elif proto is Protocol.TLS:
            data = await self._stream_query(server, wire, use_tls=True)
        elif proto is Protocol.TCP or self.proxy is not None:
            data = await self._stream_query(server, wire)
        else:
            data = await self._udp_query(server, wire)
            if data is not None:
                response = dns.message.from_wire(data)
                if response.flags & dns.flags.TC:
                    logger.debug(f"Truncated UDP reply from {server.id}, retrying over TCP")
                    data = await self._stream_query(server, wire)
                else:
                    return response

        if data is None:
            return None
        return dns.message.from_wire(data)

    # =========================================================================
    # TRANSPORT: UDP / TCP / DoT
    # =========================================================================

    async def _udp_query(self, server: NameServer, data: bytes) -> Optional[bytes]:
        loop = asyncio.get_running_loop()
        family = socket.AF_INET6 if ':' in server.ip else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        sock.setblocking(False)
        try:
            await loop.sock_connect(sock, (server.ip, server.port))
            await loop.sock_sendall(sock, data)
            return await asyncio.wait_for(loop.sock_recv(sock, 65535), self.timeout)
        finally:
            sock.close()

    async def _stream_query(self, server: NameServer, data: bytes, use_tls: bool = False) -> Optional[bytes]:
        ssl_ctx = self.ssl_context if use_tls else None
        sni = (server.host or server.ip) if use_tls else None

        if self.proxy is not None:
            reader, writer = await open_tunnel(self.proxy, server.ip, server.port, self.timeout,
                                               ssl_context=ssl_ctx, server_hostname=sni)
        elif use_tls:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(server.ip, server.port, ssl=ssl_ctx, server_hostname=sni),
                self.timeout
            )
        else:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(server.ip, server.port), self.timeout)

        try:
            writer.write(len(data).to_bytes(2, 'big') + data)
            await writer.drain()
            len_bytes = await asyncio.wait_for(reader.readexactly(2), self.timeout)
            length = int.from_bytes(len_bytes, 'big')
            return await asyncio.wait_for(reader.readexactly(length), self.timeout)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ssl.SSLError):
                pass

    # =========================================================================
    # TRANSPORT: DoH (RFC 8484 and JSON)
    # =========================================================================

    def _doh_target(self, server: NameServer, headers: dict):
        headers = headers.copy()
        extensions = {}
        if server.host:
            headers['Host'] = server.host
            extensions['sni_hostname'] = server.host
        return server.url, headers, extensions

    async def _doh_query(self, server: NameServer, data: bytes) -> Optional[bytes]:
        client = await self._ensure_doh_client()
        url, headers, extensions = self._doh_target(server, DOH_HEADERS)
        response = await asyncio.wait_for(
            client.post(url, content=data, headers=headers, extensions=extensions),
            timeout=self.timeout
        )
        if response.status_code != 200:
            logger.debug(f"DoH HTTP {response.status_code} from {server.id}")
            return None
        return response.content

    async def _doh_json_query(self, server: NameServer, request: dns.message.Message) -> Optional[dns.message.Message]:
        client = await self._ensure_doh_client()
        url, headers, extensions = self._doh_target(server, DOH_JSON_HEADERS)
        q = request.question[0]
        params = {'name': str(q.name), 'type': dns.rdatatype.to_text(q.rdtype)}
        if request.flags & dns.flags.CD:
            params['cd'] = '1'

        response = await asyncio.wait_for(
            client.get(url, params=params, headers=headers, extensions=extensions),
            timeout=self.timeout
        )
        if response.status_code != 200:
            logger.debug(f"DoH JSON HTTP {response.status_code} from {server.id}")
            return None

        payload = json.loads(response.content)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"DoH JSON reply from {server.id}: Status={payload.get('Status')}")
        return json_to_message(request, payload)
