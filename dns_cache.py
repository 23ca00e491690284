#!/usr/bin/env python3
# filename: dns_cache.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 2.1.0 (Request-keyed response cache)
# -----------------------------------------------------------------------------
"""
Response cache with LRU eviction and TTL expiry.

Exposes the two calls the fallback engine needs: query(request) and
cache_response(response). Entries are stored as wire bytes so every hit
returns an independent message.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Any, Optional, Tuple

import dns.message
import dns.rcode

from domain_utils import normalize_domain
from utils import get_logger

logger = get_logger("Cache")

UNCACHEABLE_RCODES = (dns.rcode.SERVFAIL, dns.rcode.REFUSED, dns.rcode.FORMERR, dns.rcode.NOTIMP)


class CacheStats:
    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0
        self.writes = 0

    def as_dict(self, current_size: int, max_size: int) -> dict:
        total_requests = self.hits + self.misses
        hit_rate = (self.hits / total_requests * 100) if total_requests > 0 else 0
        return {
            'size': current_size,
            'max_size': max_size,
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': f"{hit_rate:.1f}%",
            'evictions': self.evictions,
            'expirations': self.expirations,
            'writes': self.writes
        }


class LRUCache:
    """
    Generic LRU cache with per-entry TTL.

    Args:
        max_size: Maximum number of entries (0 = disabled)
        default_ttl: TTL in seconds when put() gets none
    """

    def __init__(self, max_size: int, default_ttl: int = 300):
        self.cache: OrderedDict[Any, Tuple[Any, float]] = OrderedDict()
        self.max_size = max_size or 0
        self.default_ttl = default_ttl
        self.stats = CacheStats()

    def get_entry(self, key: Any) -> Optional[Tuple[Any, float]]:
        """Return (value, expires) or None if missing/expired."""
        if self.max_size == 0 or key not in self.cache:
            self.stats.misses += 1
            return None

        self.cache.move_to_end(key)
        value, expires = self.cache[key]
        if time.time() >= expires:
            del self.cache[key]
            self.stats.expirations += 1
            self.stats.misses += 1
            return None

        self.stats.hits += 1
        return value, expires

    def get(self, key: Any) -> Optional[Any]:
        entry = self.get_entry(key)
        return entry[0] if entry else None

    def put(self, key: Any, value: Any, ttl: Optional[int] = None):
        if self.max_size == 0:
            return

        if len(self.cache) >= self.max_size and key not in self.cache:
            self.cache.popitem(last=False)
            self.stats.evictions += 1

        self.cache[key] = (value, time.time() + (ttl if ttl is not None else self.default_ttl))
        self.cache.move_to_end(key)
        self.stats.writes += 1

    def clear(self):
        self.cache.clear()

    def get_stats(self) -> dict:
        return self.stats.as_dict(len(self.cache), self.max_size)

    def log_stats(self) -> dict:
        stats = self.get_stats()
        logger.info(f"Cache stats: {stats['size']}/{stats['max_size']} entries, "
                    f"{stats['hits']} hits, {stats['misses']} misses ({stats['hit_rate']}), "
                    f"{stats['evictions']} evictions, {stats['expirations']} expirations")
        return stats

    def cleanup_expired(self) -> int:
        now = time.time()
        expired = [k for k, (_, exp) in self.cache.items() if exp < now]
        for k in expired:
            del self.cache[k]
            self.stats.expirations += 1
        return len(expired)


class DNSCache(LRUCache):
    def __init__(self, size=10000, negative_ttl=60, min_ttl=0, max_ttl=86400, gc_interval=300):
        super().__init__(max_size=size, default_ttl=negative_ttl)
        self.negative_ttl = negative_ttl
        self.min_ttl = min_ttl or 0
        self.max_ttl = max_ttl or 86400
        self.gc_interval = gc_interval
        self._gc_task: Optional[asyncio.Task] = None

    def start(self):
        if self.gc_interval and self._gc_task is None:
            self._gc_task = asyncio.create_task(self.gc_loop())

    def stop(self):
        if self._gc_task is not None:
            self._gc_task.cancel()
            self._gc_task = None

    async def gc_loop(self):
        while True:
            await asyncio.sleep(self.gc_interval)
            removed = self.cleanup_expired()
            if removed:
                logger.debug(f"Cache GC removed {removed} expired entries")
            self.log_stats()

    @staticmethod
    def _key(message: dns.message.Message) -> Optional[tuple]:
        if not message.question:
            return None
        q = message.question[0]
        return normalize_domain(q.name), q.rdtype, q.rdclass

    def query(self, request: dns.message.Message) -> Optional[dns.message.Message]:
        key = self._key(request)
        if key is None:
            return None
        entry = self.get_entry(key)
        if entry is None:
            return None

        wire, expires = entry
        ttl_remain = max(0, int(expires - time.time()))
        try:
            msg = dns.message.from_wire(wire)
        except Exception:
            self.cache.pop(key, None)
            return None

        msg.id = request.id
        for section in (msg.answer, msg.authority, msg.additional):
            for rrset in section:
                rrset.ttl = min(rrset.ttl, ttl_remain)
        return msg

    def cache_response(self, response: Optional[dns.message.Message]):
        if response is None or self.max_size == 0:
            return
        if response.rcode() in UNCACHEABLE_RCODES:
            return
        key = self._key(response)
        if key is None:
            return

        ttls = [rrset.ttl for section in (response.answer, response.authority) for rrset in section]
        if response.answer and ttls:
            ttl = min(ttls)
        else:
            ttl = min(ttls + [self.negative_ttl]) if ttls else self.negative_ttl
        ttl = max(self.min_ttl, min(ttl, self.max_ttl))
        if ttl <= 0:
            return

        self.put(key, response.to_wire(), ttl=ttl)
        logger.debug(f"Cached {key[0]} [{key[1]}] for {ttl}s")
