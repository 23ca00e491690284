#!/usr/bin/env python3
# filename: proxy.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 1.0.1
# -----------------------------------------------------------------------------
"""
Stream tunnels through an HTTP (CONNECT) or SOCKS5 forward proxy.
Used for TCP and DoT upstream queries; DoH goes through httpx's own proxy
support.
"""

import asyncio
import base64
import ipaddress
import ssl
import struct
from typing import Optional, Tuple

from fallback_config import ProxySettings, ProxyType
from utils import get_logger

logger = get_logger("Proxy")

SOCKS5_VERSION = 0x05
SOCKS5_AUTH_NONE = 0x00
SOCKS5_AUTH_USERPASS = 0x02
SOCKS5_CMD_CONNECT = 0x01
SOCKS5_ATYP_IPV4 = 0x01
SOCKS5_ATYP_DOMAIN = 0x03
SOCKS5_ATYP_IPV6 = 0x04


class ProxyError(ConnectionError):
    """Proxy refused or broke the tunnel"""
    pass


async def open_tunnel(proxy: ProxySettings, host: str, port: int, timeout: float = 5,
                      ssl_context: Optional[ssl.SSLContext] = None,
                      server_hostname: Optional[str] = None) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect to host:port through the proxy, optionally upgrading to TLS."""
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(proxy.address, proxy.port), timeout
    )
    try:
        if proxy.type is ProxyType.HTTP:
            await asyncio.wait_for(_http_connect(reader, writer, proxy, host, port), timeout)
        else:
            await asyncio.wait_for(_socks5_connect(reader, writer, proxy, host, port), timeout)

        if ssl_context is not None:
            await asyncio.wait_for(
                writer.start_tls(ssl_context, server_hostname=server_hostname or host), timeout
            )
    except BaseException:
        writer.close()
        raise

    logger.debug(f"Tunnel open to {host}:{port} via {proxy.type.value}://{proxy.address}:{proxy.port}")
    return reader, writer


async def _http_connect(reader, writer, proxy: ProxySettings, host: str, port: int):
    target = f"[{host}]:{port}" if ':' in host else f"{host}:{port}"
    lines = [f"CONNECT {target} HTTP/1.1", f"Host: {target}"]
    if proxy.username is not None:
        token = base64.b64encode(f"{proxy.username}:{proxy.password or ''}".encode()).decode()
        lines.append(f"Proxy-Authorization: Basic {token}")
    writer.write(('\r\n'.join(lines) + '\r\n\r\n').encode())
    await writer.drain()

    head = await reader.readuntil(b'\r\n\r\n')
    status_line = head.split(b'\r\n', 1)[0].decode('latin-1')
    parts = status_line.split()
    if len(parts) < 2 or parts[1] != '200':
        raise ProxyError(f"HTTP proxy refused CONNECT: {status_line}")


async def _socks5_connect(reader, writer, proxy: ProxySettings, host: str, port: int):
    methods = [SOCKS5_AUTH_NONE]
    if proxy.username is not None:
        methods.append(SOCKS5_AUTH_USERPASS)
    writer.write(bytes([SOCKS5_VERSION, len(methods), *methods]))
    await writer.drain()

    version, method = await reader.readexactly(2)
    if version != SOCKS5_VERSION or method not in methods:
        raise ProxyError(f"SOCKS5 negotiation failed (method {method:#x})")

    if method == SOCKS5_AUTH_USERPASS:
        user = proxy.username.encode()
        password = (proxy.password or '').encode()
        writer.write(bytes([0x01, len(user)]) + user + bytes([len(password)]) + password)
        await writer.drain()
        _, status = await reader.readexactly(2)
        if status != 0x00:
            raise ProxyError("SOCKS5 authentication rejected")

    writer.write(_socks5_request(host, port))
    await writer.drain()

    version, reply, _, atyp = await reader.readexactly(4)
    if version != SOCKS5_VERSION or reply != 0x00:
        raise ProxyError(f"SOCKS5 CONNECT failed (reply {reply:#x})")

    # Drain the bound address
    if atyp == SOCKS5_ATYP_IPV4:
        await reader.readexactly(4 + 2)
    elif atyp == SOCKS5_ATYP_IPV6:
        await reader.readexactly(16 + 2)
    elif atyp == SOCKS5_ATYP_DOMAIN:
        length = (await reader.readexactly(1))[0]
        await reader.readexactly(length + 2)
    else:
        raise ProxyError(f"SOCKS5 reply with unknown address type {atyp:#x}")


def _socks5_request(host: str, port: int) -> bytes:
    request = bytearray([SOCKS5_VERSION, SOCKS5_CMD_CONNECT, 0x00])
    try:
        ip = ipaddress.ip_address(host)
        request.append(SOCKS5_ATYP_IPV4 if ip.version == 4 else SOCKS5_ATYP_IPV6)
        request.extend(ip.packed)
    except ValueError:
        encoded = host.encode('idna')
        request.append(SOCKS5_ATYP_DOMAIN)
        request.append(len(encoded))
        request.extend(encoded)
    request.extend(struct.pack('!H', port))
    return bytes(request)
