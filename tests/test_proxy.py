"""
Tests for HTTP CONNECT and SOCKS5 tunnel handshakes.
"""

import asyncio
import base64

import pytest

from fallback_config import ProxySettings, ProxyType
from proxy import ProxyError, _http_connect, _socks5_connect, _socks5_request


class FakeWriter:
    def __init__(self):
        self.buffer = bytearray()

    def write(self, data):
        self.buffer.extend(data)

    async def drain(self):
        pass


def reader_with(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class TestSocks5Request:
    def test_ipv4(self):
        assert _socks5_request('8.8.8.8', 53) == bytes([5, 1, 0, 1, 8, 8, 8, 8, 0, 53])

    def test_ipv6(self):
        request = _socks5_request('2001:db8::1', 853)
        assert request[3] == 0x04
        assert len(request) == 4 + 16 + 2
        assert request[-2:] == (853).to_bytes(2, 'big')

    def test_domain(self):
        request = _socks5_request('dns.google', 443)
        assert request[3] == 0x03
        assert request[4] == len('dns.google')
        assert request[5:15] == b'dns.google'


class TestSocks5Connect:
    @pytest.mark.asyncio
    async def test_no_auth(self):
        proxy = ProxySettings(ProxyType.SOCKS5, '127.0.0.1', 1080)
        reader = reader_with(bytes([5, 0]) + bytes([5, 0, 0, 1, 127, 0, 0, 1, 0x04, 0x38]))
        writer = FakeWriter()

        await _socks5_connect(reader, writer, proxy, '9.9.9.9', 53)

        assert writer.buffer[:3] == bytes([5, 1, 0])
        assert writer.buffer[3:] == _socks5_request('9.9.9.9', 53)

    @pytest.mark.asyncio
    async def test_user_pass(self):
        proxy = ProxySettings(ProxyType.SOCKS5, '127.0.0.1', 1080, 'bob', 'pw')
        reader = reader_with(bytes([5, 2]) + bytes([1, 0]) + bytes([5, 0, 0, 1, 0, 0, 0, 0, 0, 0]))
        writer = FakeWriter()

        await _socks5_connect(reader, writer, proxy, '9.9.9.9', 53)

        assert writer.buffer[:4] == bytes([5, 2, 0, 2])
        assert bytes([1, 3]) + b'bob' + bytes([2]) + b'pw' in writer.buffer

    @pytest.mark.asyncio
    async def test_auth_rejected(self):
        proxy = ProxySettings(ProxyType.SOCKS5, '127.0.0.1', 1080, 'bob', 'wrong')
        reader = reader_with(bytes([5, 2]) + bytes([1, 1]))

        with pytest.raises(ProxyError):
            await _socks5_connect(reader, FakeWriter(), proxy, '9.9.9.9', 53)

    @pytest.mark.asyncio
    async def test_connect_refused(self):
        proxy = ProxySettings(ProxyType.SOCKS5, '127.0.0.1', 1080)
        reader = reader_with(bytes([5, 0]) + bytes([5, 5, 0, 1]))

        with pytest.raises(ProxyError):
            await _socks5_connect(reader, FakeWriter(), proxy, '9.9.9.9', 53)


class TestHttpConnect:
    @pytest.mark.asyncio
    async def test_established(self):
        proxy = ProxySettings(ProxyType.HTTP, 'proxy.lan', 3128, 'alice', 's3cret')
        reader = reader_with(b"HTTP/1.1 200 Connection established\r\n\r\n")
        writer = FakeWriter()

        await _http_connect(reader, writer, proxy, '1.1.1.1', 853)

        sent = bytes(writer.buffer).decode()
        assert sent.startswith("CONNECT 1.1.1.1:853 HTTP/1.1\r\n")
        token = base64.b64encode(b"alice:s3cret").decode()
        assert f"Proxy-Authorization: Basic {token}" in sent

    @pytest.mark.asyncio
    async def test_ipv6_target_is_bracketed(self):
        proxy = ProxySettings(ProxyType.HTTP, 'proxy.lan', 3128)
        writer = FakeWriter()

        await _http_connect(reader_with(b"HTTP/1.0 200 OK\r\n\r\n"), writer, proxy, '2606:4700::1111', 853)
        assert bytes(writer.buffer).startswith(b"CONNECT [2606:4700::1111]:853 ")

    @pytest.mark.asyncio
    async def test_refused(self):
        proxy = ProxySettings(ProxyType.HTTP, 'proxy.lan', 3128)
        reader = reader_with(b"HTTP/1.1 407 Proxy Authentication Required\r\n\r\n")

        with pytest.raises(ProxyError):
            await _http_connect(reader, FakeWriter(), proxy, '1.1.1.1', 853)
