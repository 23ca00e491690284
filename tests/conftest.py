"""
Shared fixtures: DNS message builders and an in-memory GeoIP reader.
"""

import ipaddress

import dns.message
import dns.rcode
import dns.rrset
import pytest


class FakeReader:
    """Stands in for maxminddb.Reader: get(ip) -> record dict or None."""

    def __init__(self, countries=None, fail=False):
        self.countries = {ipaddress.ip_address(k): v for k, v in (countries or {}).items()}
        self.fail = fail
        self.lookups = 0

    def get(self, ip):
        self.lookups += 1
        if self.fail:
            raise ValueError("corrupt search tree")
        code = self.countries.get(ipaddress.ip_address(ip))
        if code is None:
            return None
        return {'country': {'iso_code': code}}

    def close(self):
        pass


def build_query(name, rdtype='A'):
    return dns.message.make_query(name, rdtype)


def build_answer(request, *addresses, rdtype='A', ttl=300, rcode=dns.rcode.NOERROR):
    response = dns.message.make_response(request)
    response.set_rcode(rcode)
    if addresses:
        q = request.question[0]
        response.answer.append(dns.rrset.from_text(q.name, ttl, 'IN', rdtype, *addresses))
    return response


@pytest.fixture
def make_query():
    return build_query


@pytest.fixture
def make_answer():
    return build_answer


@pytest.fixture
def fake_reader():
    return FakeReader

