"""Test doubles and packet helpers shared by the test modules."""

import asyncio

import dns.message

from records import AddressRecord, NormalizedAnswer


class FakeUpstream:
    """
    Upstream double. Answers every query with the given addresses after
    delay seconds, or raises error if one is set.
    """

    def __init__(self, name, addresses=(), delay=0.0, ttl=300, error=None, records=None):
        self.name = name
        self.addresses = list(addresses)
        self.delay = delay
        self.ttl = ttl
        self.error = error
        self.records = records
        self.calls = []

    async def resolve(self, request, query):
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.records is not None:
            return NormalizedAnswer(query, tuple(self.records), True)
        records = tuple(AddressRecord(query.name, addr, self.ttl) for addr in self.addresses)
        return NormalizedAnswer(query, records, True)

    async def close(self):
        pass


class FakeEnforcer:
    """Records every enforce() call instead of touching ipset."""

    def __init__(self, enabled=True):
        self.enabled = enabled
        self.set_name = 'gfwlist' if enabled else None
        self.calls = []

    async def enforce(self, ip, host, probe):
        self.calls.append((ip, host, probe))
        return True


def make_query(name, rdtype='A', edns=False):
    """Wire form of a one-question query."""
    return dns.message.make_query(name, rdtype, use_edns=0 if edns else False).to_wire()


def answer_addresses(wire):
    """All address strings in the answer section of a response."""
    response = dns.message.from_wire(wire)
    return [rd.address for rrset in response.answer for rd in rrset]


def answer_ttls(wire):
    response = dns.message.from_wire(wire)
    return [rrset.ttl for rrset in response.answer]
