"""
Tests for the contamination fallback decision engine.
"""

from unittest.mock import AsyncMock, MagicMock

import dns.rcode
import pytest

from dns_cache import DNSCache
from fallback_config import FallbackSettings, GeoSettings, NameServer, parse_fallback_config
from fallback_engine import FallbackEngine, Verdict
from geoip import GeoClassifier


def make_upstream(result=None, error=None):
    upstream = MagicMock()
    upstream.resolve = AsyncMock(return_value=result, side_effect=error)
    upstream.close = AsyncMock()
    return upstream


def make_engine(upstream=None, classifier=None, **settings):
    settings.setdefault('name_servers', (NameServer('8.8.8.8', 53),))
    return FallbackEngine(FallbackSettings(**settings), upstream or make_upstream(), classifier)


def geo_on(*countries):
    return GeoSettings(is_enabled=True, countries=frozenset(countries))


class TestDecide:
    def test_passthrough_without_nameservers(self, make_query, make_answer):
        engine = FallbackEngine(FallbackSettings(domains=("+.example.com",), ipcidr=("0.0.0.0/0",)))
        request = make_query("www.example.com")
        first = make_answer(request, "10.0.0.1")

        decision = engine.decide(request, first)
        assert not engine.enabled
        assert decision.verdict is Verdict.ACCEPT
        assert decision.answer is first

    def test_except_rule_accepts_unexamined(self, make_query, make_answer):
        engine = make_engine(except_domains=("+.intranet.example",), domains=("+.intranet.example",),
                             ipcidr=("10.0.0.0/8",))
        request = make_query("wiki.intranet.example")
        first = make_answer(request, "10.1.1.1")

        decision = engine.decide(request, first)
        assert decision.accepted
        assert decision.answer is first

    def test_domain_rule_forces_fallback(self, make_query, make_answer):
        engine = make_engine(domains=("*.badcdn.com",))
        request = make_query("x.badcdn.com")

        decision = engine.decide(request, make_answer(request, "93.184.216.34"))
        assert decision.verdict is Verdict.FALLBACK
        assert "badcdn.com" in decision.reason

    def test_missing_error_or_empty_first_pass(self, make_query, make_answer):
        engine = make_engine()
        request = make_query("example.org")

        assert engine.decide(request, None).verdict is Verdict.FALLBACK
        assert engine.decide(request, make_answer(request, rcode=dns.rcode.NXDOMAIN)).verdict is Verdict.FALLBACK
        assert engine.decide(request, make_answer(request)).verdict is Verdict.FALLBACK

    def test_one_record_in_range_triggers_fallback(self, make_query, make_answer):
        engine = make_engine(ipcidr=("203.0.113.0/24",))
        request = make_query("example.org")
        first = make_answer(request, "93.184.216.34", "203.0.113.9", "93.184.216.35")

        decision = engine.decide(request, first)
        assert decision.verdict is Verdict.FALLBACK
        assert "203.0.113.0/24" in decision.reason

    def test_range_table_ignores_aaaa(self, make_query, make_answer):
        engine = make_engine(ipcidr=("0.0.0.0/0",))
        request = make_query("example.org", "AAAA")

        assert engine.decide(request, make_answer(request, "2001:db8::1", rdtype="AAAA")).accepted

    def test_geo_not_found_or_foreign_triggers_fallback(self, make_query, make_answer, fake_reader):
        classifier = GeoClassifier(fake_reader({'8.8.8.8': 'US', '9.9.9.9': 'CH'}))
        engine = make_engine(classifier=classifier, geo=geo_on('US'))
        request = make_query("example.org")

        assert engine.decide(request, make_answer(request, "8.8.8.8")).accepted
        assert engine.decide(request, make_answer(request, "1.2.3.4")).verdict is Verdict.FALLBACK
        assert engine.decide(request, make_answer(request, "9.9.9.9")).verdict is Verdict.FALLBACK
        assert engine.decide(request, make_answer(request, "8.8.8.8", "9.9.9.9")).verdict is Verdict.FALLBACK

    def test_geo_checks_aaaa(self, make_query, make_answer, fake_reader):
        classifier = GeoClassifier(fake_reader({'2001:db8::1': 'DE'}))
        engine = make_engine(classifier=classifier, geo=geo_on('US'))
        request = make_query("example.org", "AAAA")

        decision = engine.decide(request, make_answer(request, "2001:db8::1", rdtype="AAAA"))
        assert decision.verdict is Verdict.FALLBACK
        assert "DE" in decision.reason

    def test_geo_without_database_fails_closed(self, make_query, make_answer):
        engine = make_engine(classifier=GeoClassifier(), geo=geo_on('US'))
        request = make_query("example.org")

        assert engine.decide(request, make_answer(request, "8.8.8.8")).verdict is Verdict.FALLBACK

    def test_geo_without_countries_is_inactive(self, make_query, make_answer):
        engine = make_engine(classifier=GeoClassifier(), geo=GeoSettings(is_enabled=True))
        request = make_query("example.org")

        assert engine.decide(request, make_answer(request, "8.8.8.8")).accepted

    def test_non_address_records_are_not_inspected(self, make_query, make_answer):
        engine = make_engine(ipcidr=("0.0.0.0/0",))
        request = make_query("example.org", "TXT")

        assert engine.decide(request, make_answer(request, '"v=spf1 -all"', rdtype="TXT")).accepted

    def test_accept_is_idempotent(self, make_query, make_answer, fake_reader):
        classifier = GeoClassifier(fake_reader({'8.8.8.8': 'US', '8.8.4.4': 'US'}))
        engine = make_engine(classifier=classifier, geo=geo_on('US'), ipcidr=("10.0.0.0/8",))
        request = make_query("dns.google")
        first = make_answer(request, "8.8.8.8", "8.8.4.4")
        wire = first.to_wire()

        for _ in range(3):
            decision = engine.decide(request, first)
            assert decision.accepted
            assert decision.answer is first
        assert first.to_wire() == wire


class TestProcess:
    @pytest.mark.asyncio
    async def test_bypass_end_to_end(self, tmp_path, make_query, make_answer):
        """*.badcdn.com goes straight to the fallback nameserver."""
        settings = parse_fallback_config({
            'domains': ['*.badcdn.com'],
            'ipcidr': [],
            'geo': {'isEnabled': False},
            'nameServers': [{'ip': '8.8.8.8', 'protocol': 'Udp'}],
        })
        engine = FallbackEngine.from_settings(settings, tmp_path)
        assert [s.ip for s in engine.upstream.servers] == ['8.8.8.8']

        request = make_query("x.badcdn.com")
        fallback_answer = make_answer(request, "104.16.0.1")
        engine.upstream.resolve = AsyncMock(return_value=fallback_answer)
        direct = AsyncMock(return_value=make_answer(request, "127.0.0.2"))

        result = await engine.process(request, direct)

        assert result is fallback_answer
        direct.assert_not_called()
        engine.upstream.resolve.assert_awaited_once()
        await engine.stop()

    @pytest.mark.asyncio
    async def test_accepted_answer_is_returned(self, make_query, make_answer):
        upstream = make_upstream()
        engine = make_engine(upstream, ipcidr=("10.0.0.0/8",))
        request = make_query("example.org")
        first = make_answer(request, "93.184.216.34")

        result = await engine.process(request, AsyncMock(return_value=first))

        assert result is first
        upstream.resolve.assert_not_called()

    @pytest.mark.asyncio
    async def test_contaminated_answer_is_replaced(self, make_query, make_answer):
        request = make_query("example.org")
        clean = make_answer(request, "93.184.216.34")
        upstream = make_upstream(result=clean)
        engine = make_engine(upstream, ipcidr=("127.0.0.0/8",))

        result = await engine.process(request, AsyncMock(return_value=make_answer(request, "127.0.0.1")))

        assert result is clean
        upstream.resolve.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_fallback_returns_first_pass(self, make_query, make_answer):
        request = make_query("example.org")
        first = make_answer(request, "127.0.0.1")
        engine = make_engine(make_upstream(result=None), ipcidr=("127.0.0.0/8",))

        assert await engine.process(request, AsyncMock(return_value=first)) is first

    @pytest.mark.asyncio
    async def test_fallback_exception_is_contained(self, make_query, make_answer):
        request = make_query("example.org")
        first = make_answer(request, "127.0.0.1")
        engine = make_engine(make_upstream(error=RuntimeError("boom")), ipcidr=("127.0.0.0/8",))

        assert await engine.process(request, AsyncMock(return_value=first)) is first

    @pytest.mark.asyncio
    async def test_nothing_available_gives_servfail(self, make_query):
        request = make_query("example.org")
        engine = make_engine(make_upstream(result=None))

        result = await engine.process(request, AsyncMock(side_effect=OSError("network down")))

        assert result.rcode() == dns.rcode.SERVFAIL
        assert request.is_response(result)

    @pytest.mark.asyncio
    async def test_passthrough_uses_direct_path(self, make_query, make_answer):
        engine = FallbackEngine(None)
        request = make_query("example.org")
        first = make_answer(request, "10.0.0.1")
        direct = AsyncMock(return_value=first)

        assert await engine.process(request, direct) is first
        direct.assert_awaited_once_with(request)

    @pytest.mark.asyncio
    async def test_no_question_is_formerr(self, make_query):
        request = make_query("example.org")
        request.question = []
        engine = make_engine()

        result = await engine.process(request, AsyncMock())
        assert result.rcode() == dns.rcode.FORMERR


class TestCaching:
    @pytest.mark.asyncio
    async def test_successful_fallback_is_cached(self, make_query, make_answer):
        request = make_query("x.badcdn.com")
        clean = make_answer(request, "104.16.0.1")
        engine = make_engine(make_upstream(result=clean), domains=("*.badcdn.com",))
        cache = DNSCache(size=100)

        await engine.process(request, AsyncMock(), cache=cache)

        again = make_query("x.badcdn.com")
        cached = cache.query(again)
        assert cached is not None
        assert cached.id == again.id
        assert cached.answer[0][0].address == "104.16.0.1"

    @pytest.mark.asyncio
    async def test_error_fallback_is_not_cached(self, make_query, make_answer):
        request = make_query("x.badcdn.com")
        failed = make_answer(request, rcode=dns.rcode.SERVFAIL)
        engine = make_engine(make_upstream(result=failed), domains=("*.badcdn.com",))
        cache = MagicMock()
        cache.query.return_value = None

        result = await engine.process(request, AsyncMock(), cache=cache)

        assert result is failed
        cache.cache_response.assert_not_called()

    @pytest.mark.asyncio
    async def test_cache_hit_short_circuits(self, make_query, make_answer):
        request = make_query("example.org")
        cached = make_answer(request, "192.0.2.1")
        cache = MagicMock()
        cache.query.return_value = cached
        upstream = make_upstream()
        engine = make_engine(upstream, domains=("example.org",))
        direct = AsyncMock()

        assert await engine.process(request, direct, cache=cache) is cached
        direct.assert_not_called()
        upstream.resolve.assert_not_called()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_closes_upstream_and_refresher(self):
        upstream = make_upstream()
        refresher = MagicMock()
        refresher.stop = AsyncMock()
        engine = FallbackEngine(FallbackSettings(name_servers=(NameServer('8.8.8.8', 53),)),
                                upstream, refresher=refresher)

        engine.start()
        refresher.start.assert_called_once()

        await engine.stop()
        refresher.stop.assert_awaited_once()
        upstream.close.assert_awaited_once()

    def test_from_settings_without_section_is_passthrough(self, tmp_path):
        engine = FallbackEngine.from_settings(None, tmp_path)
        assert not engine.enabled
        assert engine.refresher is None

    def test_from_settings_with_subscription_builds_refresher(self, tmp_path):
        settings = parse_fallback_config({
            'geo': {'isEnabled': True, 'subscribeUrl': 'https://geo.example.net/db.mmdb', 'countries': ['us']},
            'nameServers': [{'ip': '1.1.1.1'}],
        })
        engine = FallbackEngine.from_settings(settings, tmp_path)

        assert engine.refresher is not None
        assert engine.refresher.url == 'https://geo.example.net/db.mmdb'
        assert engine.countries == frozenset({'US'})
        assert not engine.geo.loaded
