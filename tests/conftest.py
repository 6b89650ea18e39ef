"""pytest fixtures for testing."""

import pytest

from domain_matcher import DomainMatcher
from ip_ranges import IPRangeSet
from resolver import DNSHandler
from defaults import merge_with_defaults

from helpers import FakeEnforcer


@pytest.fixture
def enforcer():
    return FakeEnforcer()


@pytest.fixture
def make_handler(enforcer):
    """Factory building a DNSHandler from in-memory lists and fakes."""

    def _make(trusted, domestic, blacklist=(), whitelist=(), cdn_ranges=(), domestic_ranges=(),
              race_timeout_ms=500, aaaa_filter='off', block_ptr=True):
        config = merge_with_defaults({
            'upstream': {'race_timeout_ms': race_timeout_ms},
            'filtering': {'aaaa_filter': aaaa_filter, 'block_ptr': block_ptr},
        })
        black = DomainMatcher()
        black.load(blacklist)
        white = DomainMatcher()
        white.load(whitelist)
        cdn = IPRangeSet()
        cdn.load(cdn_ranges)
        domestic_set = IPRangeSet()
        domestic_set.load(domestic_ranges)
        return DNSHandler(
            config=config,
            trusted=trusted,
            domestic=domestic,
            blacklist=black,
            whitelist=white,
            cdn_ranges=cdn,
            domestic_ranges=domestic_set,
            enforcer=enforcer
        )

    return _make


@pytest.fixture
def list_file(tmp_path):
    """Write lines to a temporary list file and return its path."""

    def _write(name, lines):
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n", encoding='utf-8')
        return str(path)

    return _write
