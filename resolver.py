#!/usr/bin/env python3
# filename: resolver.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 3.0.0
# -----------------------------------------------------------------------------
"""
Query handler: wire bytes in, wire bytes out.
Flow: parse -> EDNS client subnet -> FallbackEngine.process -> serialize.
"""

import logging
from typing import Optional

import dns.edns
import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype

from dns_cache import DNSCache
from domain_utils import normalize_domain
from fallback_engine import FallbackEngine, servfail_for
from upstream_manager import UpstreamManager
from utils import get_logger, ContextAdapter

logger = get_logger("Resolver")


def client_subnet(request: dns.message.Message) -> Optional[str]:
    """Address carried in an EDNS Client Subnet option, if any."""
    for opt in request.options:
        if isinstance(opt, dns.edns.ECSOption):
            try:
                return str(opt.address)
            except (AttributeError, ValueError):
                return None
    return None


class DNSHandler:
    def __init__(self, engine: FallbackEngine, upstream: UpstreamManager, cache: Optional[DNSCache] = None):
        self.engine = engine
        self.upstream = upstream
        self.cache = cache

    async def direct_resolve(self, request: dns.message.Message, req_logger=None) -> Optional[dns.message.Message]:
        return await self.upstream.resolve(request, req_logger=req_logger)

    async def process_query(self, data: bytes, client_addr, meta=None) -> Optional[bytes]:
        try:
            request = dns.message.from_wire(data)
        except dns.exception.DNSException as e:
            logger.warning(f"Failed to parse DNS packet from {client_addr}: {e}")
            return None

        if not client_addr:
            logger.warning("Query received with no client address, dropping")
            return None

        meta = meta or {}
        client_ip = client_addr[0]
        ecs_ip = client_subnet(request)
        ctx = {'id': request.id, 'ip': ecs_ip or client_ip, 'proto': meta.get('proto', 'udp').upper()}
        req_logger = ContextAdapter(logger, ctx)

        if request.question:
            q = request.question[0]
            req_logger.info(f"QUERY: {normalize_domain(q.name)} [{dns.rdatatype.to_text(q.rdtype)}]")

        async def direct(req):
            return await self.direct_resolve(req, req_logger)

        try:
            response = await self.engine.process(request, direct, cache=self.cache, req_logger=req_logger)
        except Exception as e:
            req_logger.exception(f"Unhandled error while resolving: {e}")
            response = servfail_for(request)

        response.id = request.id
        if req_logger.isEnabledFor(logging.DEBUG):
            req_logger.debug(f"RESPONSE: {dns.rcode.to_text(response.rcode())}, {len(response.answer)} answer RRsets")

        max_size = 65535
        if meta.get('proto', 'udp') == 'udp':
            max_size = max(512, request.payload) if request.edns >= 0 else 512

        try:
            return response.to_wire(max_size=max_size)
        except dns.exception.TooBig:
            req_logger.debug(f"Response exceeds {max_size} bytes, sending TC")
            reply = dns.message.make_response(request)
            reply.flags |= dns.flags.TC
            return reply.to_wire()
        except dns.exception.DNSException as e:
            req_logger.error(f"Failed to serialize response: {e}")
            return servfail_for(request).to_wire()
