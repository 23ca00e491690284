#!/usr/bin/env python3
# filename: fallback_engine.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 2.3.0 (Combined pre/post checks with except list)
# -----------------------------------------------------------------------------
"""
Contamination fallback decision engine.

Per query:
  except rule          -> answer from the direct path, never inspected
  domain rule (bypass) -> skip the direct path, resolve via fallback servers
  otherwise            -> resolve directly, inspect every A/AAAA record:
                            A inside an ipcidr range            -> fallback
                            geo on and country unknown/not listed -> fallback
                          all records pass                      -> accept

At most one fallback resolution per request. A failed fallback degrades to
the direct answer (or SERVFAIL when there is none); nothing raises out of
process().
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import dns.message
import dns.rcode
import dns.rdatatype

from domain_matcher import DomainMatcher, MatchResult
from domain_utils import normalize_domain
from fallback_config import FallbackSettings
from geo_updater import GeoDatabaseRefresher
from geoip import GeoClassifier, load_from_folder
from ip_ranges import RangeTable
from upstream_manager import UpstreamManager
from utils import get_logger, enable_debug, ContextAdapter

logger = get_logger("Fallback.Engine")

ADDRESS_TYPES = (dns.rdatatype.A, dns.rdatatype.AAAA)

DirectResolver = Callable[[dns.message.Message], Awaitable[Optional[dns.message.Message]]]


class Verdict(Enum):
    ACCEPT = "accept"
    FALLBACK = "fallback"


@dataclass
class Decision:
    verdict: Verdict
    reason: str
    answer: Optional[dns.message.Message] = None

    @property
    def accepted(self) -> bool:
        return self.verdict is Verdict.ACCEPT


def _accept(reason: str, answer) -> Decision:
    return Decision(Verdict.ACCEPT, reason, answer)


def _fallback(reason: str) -> Decision:
    return Decision(Verdict.FALLBACK, reason)


def servfail_for(request: dns.message.Message) -> dns.message.Message:
    reply = dns.message.make_response(request)
    reply.set_rcode(dns.rcode.SERVFAIL)
    return reply


class FallbackEngine:
    def __init__(self, settings: Optional[FallbackSettings] = None,
                 upstream: Optional[UpstreamManager] = None,
                 geo: Optional[GeoClassifier] = None,
                 refresher: Optional[GeoDatabaseRefresher] = None):
        self.settings = settings or FallbackSettings()
        self.upstream = upstream if upstream else None
        self.geo = geo or GeoClassifier()
        self.refresher = refresher

        self.domains = DomainMatcher(self.settings.domains, "domains")
        self.except_domains = DomainMatcher(self.settings.except_domains, "exceptDomains")
        self.ranges = RangeTable.build(self.settings.ipcidr)
        self.countries = self.settings.geo.countries
        self.geo_active = self.settings.geo.active

        if self.upstream is None:
            logger.info("No fallback nameservers: running as passthrough")

    @classmethod
    def from_settings(cls, settings: Optional[FallbackSettings], storage_dir,
                      timeout: float = 5.0) -> 'FallbackEngine':
        """Wire up upstream, geo database and refresher from parsed settings."""
        if settings is None:
            return cls(None)

        if settings.debug:
            enable_debug("Fallback")

        upstream = None
        if settings.name_servers:
            upstream = UpstreamManager(settings.name_servers, proxy=settings.proxy,
                                       timeout=timeout, label="Fallback")

        geo = GeoClassifier()
        refresher = None
        if settings.geo.is_enabled:
            geo.publish(load_from_folder(storage_dir))
            if settings.geo.subscribe_url:
                refresher = GeoDatabaseRefresher(geo, settings.geo.subscribe_url, storage_dir)
            if not settings.geo.countries:
                logger.warning("Geo enabled without countries: geo checks are inactive")

        return cls(settings, upstream, geo, refresher)

    @property
    def enabled(self) -> bool:
        return self.upstream is not None

    def start(self):
        if self.refresher is not None:
            self.refresher.start()

    async def stop(self):
        if self.refresher is not None:
            await self.refresher.stop()
        if self.upstream is not None:
            await self.upstream.close()
        self.geo.close()

    # =========================================================================
    # CLASSIFICATION (never suspends)
    # =========================================================================

    def is_exempt(self, qname) -> bool:
        return self.except_domains.match(qname) is not None

    def classify_query(self, qname) -> MatchResult:
        return self.domains.classify(qname)

    def check_address(self, rdtype, address: str, log=logger) -> Optional[str]:
        """Return a fallback reason for one A/AAAA address, or None if acceptable."""
        if rdtype == dns.rdatatype.A and self.ranges:
            cidr = self.ranges.match(address)
            if cidr:
                return f"{address} in ip range {cidr}"

        if self.geo_active:
            country = self.geo.lookup_country(address)
            if country is None:
                return f"country of {address} not found"
            if country not in self.countries:
                return f"{address} located in {country}"
            if log.isEnabledFor(logging.DEBUG):
                log.debug(f"Match country ({address}:{country})")

        return None

    def inspect_answer(self, response: Optional[dns.message.Message], log=logger) -> Decision:
        if response is None:
            return _fallback("no first-pass answer")
        if response.rcode() != dns.rcode.NOERROR:
            return _fallback(f"first-pass rcode {dns.rcode.to_text(response.rcode())}")
        if not response.answer:
            return _fallback("empty first-pass answer")

        for rrset in response.answer:
            if rrset.rdtype not in ADDRESS_TYPES:
                continue
            for rdata in rrset:
                address = rdata.address
                if log.isEnabledFor(logging.DEBUG):
                    log.debug(f"Checking {dns.rdatatype.to_text(rrset.rdtype)} {address}")
                reason = self.check_address(rrset.rdtype, address, log)
                if reason:
                    return _fallback(reason)

        return _accept("all records acceptable", response)

    def decide(self, request: dns.message.Message, first_pass: Optional[dns.message.Message],
               log=logger) -> Decision:
        if not self.enabled:
            return _accept("passthrough", first_pass)

        qname = request.question[0].name if request.question else ""

        rule = self.except_domains.match(qname)
        if rule is not None:
            return _accept(f"except rule '{rule.text}'", first_pass)

        rule = self.domains.match(qname)
        if rule is not None:
            return _fallback(f"domain rule '{rule.text}'")

        return self.inspect_answer(first_pass, log)

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def resolve_fallback(self, request: dns.message.Message,
                               first_pass: Optional[dns.message.Message] = None,
                               cache=None, log=logger) -> dns.message.Message:
        """Re-resolve via fallback servers; degrade to first_pass on failure."""
        result = None
        if self.upstream is not None:
            try:
                result = await self.upstream.resolve(request, req_logger=log)
            except Exception as e:
                log.error(f"Fallback resolution error: {e}")
                result = None

        if result is None:
            log.warning("Fallback resolution failed, returning first-pass answer")
            return first_pass if first_pass is not None else servfail_for(request)

        if cache is not None and result.rcode() == dns.rcode.NOERROR:
            cache.cache_response(result)
        return result

    async def _direct(self, request, direct_resolve: DirectResolver, log) -> Optional[dns.message.Message]:
        try:
            return await direct_resolve(request)
        except Exception as e:
            log.warning(f"Direct resolution error: {e}")
            return None

    async def process(self, request: dns.message.Message, direct_resolve: DirectResolver,
                      cache=None, req_logger=None) -> dns.message.Message:
        """Full request path: cache, except/bypass rules, direct resolution, verdict, fallback."""
        log = ContextAdapter(logger, req_logger.extra) if req_logger is not None else logger

        if not request.question:
            reply = dns.message.make_response(request)
            reply.set_rcode(dns.rcode.FORMERR)
            return reply

        qname_norm = normalize_domain(request.question[0].name)
        if log.isEnabledFor(logging.DEBUG):
            log.debug(f"Incoming request ({qname_norm})")

        if cache is not None:
            cached = cache.query(request)
            if cached is not None:
                log.debug("Return cache result")
                return cached

        if not self.enabled or self.is_exempt(qname_norm):
            answer = await self._direct(request, direct_resolve, log)
            if answer is None:
                return servfail_for(request)
            if cache is not None:
                cache.cache_response(answer)
            return answer

        first_pass = None
        if self.classify_query(qname_norm) is MatchResult.NORMAL:
            first_pass = await self._direct(request, direct_resolve, log)

        decision = self.decide(request, first_pass, log)
        if decision.accepted:
            if cache is not None:
                cache.cache_response(decision.answer)
            return decision.answer

        log.info(f"Fallback {qname_norm}: {decision.reason}")
        return await self.resolve_fallback(request, first_pass, cache, log)
