"""Unit tests for the IPv4 range matcher."""

import pytest

from ip_ranges import IPRangeSet


def build(lines):
    ranges = IPRangeSet()
    ranges.load(lines)
    return ranges


class TestContains:
    """Test IPRangeSet.contains() and contains_any()."""

    def test_cidr_containment(self):
        ranges = build(["1.0.1.0/24", "36.96.0.0/12"])
        assert ranges.contains("1.0.1.0") is True
        assert ranges.contains("1.0.1.255") is True
        assert ranges.contains("1.0.2.0") is False
        assert ranges.contains("36.111.255.255") is True
        assert ranges.contains("36.112.0.0") is False

    def test_bare_address_is_host_route(self):
        ranges = build(["8.8.8.8"])
        assert ranges.contains("8.8.8.8") is True
        assert ranges.contains("8.8.8.9") is False

    def test_invalid_and_ipv6_addresses_ignored(self):
        """Bad candidates are skipped, never raised."""
        ranges = build(["0.0.0.0/0"])
        assert ranges.contains("not-an-ip") is False
        assert ranges.contains("2001:db8::1") is False
        assert ranges.contains("") is False

    def test_contains_any(self):
        ranges = build(["104.16.0.0/12"])
        assert ranges.contains_any(["1.1.1.1", "104.17.3.4"]) is True
        assert ranges.contains_any(["1.1.1.1", "garbage"]) is False
        assert ranges.contains_any([]) is False


class TestLoad:
    """Test list parsing."""

    @pytest.mark.parametrize("line", [
        "300.1.1.1",
        "1.2.3.4/33",
        "1.2.3",
        "1.2.3.4/",
        "10.0.0.0/8 # comment",
        "2001:db8::/32",
    ])
    def test_malformed_lines_dropped(self, line, caplog):
        ranges = build([line, "10.0.0.0/8"])
        assert len(ranges) == 1
        assert "does not contain a valid IPv4 address" in caplog.text

    def test_comments_skipped(self):
        ranges = build(["# chnroute", "", "1.0.1.0/24"])
        assert len(ranges) == 1

    def test_host_bits_are_tolerated(self):
        """Prefixes with host bits set still cover their network."""
        ranges = build(["192.168.1.77/24"])
        assert ranges.contains("192.168.1.1") is True

    def test_from_file_reports_line_numbers(self, list_file, caplog):
        path = list_file("chnroute.txt", ["# header", "1.0.1.0/24", "999.0.0.0/8"])
        ranges = IPRangeSet.from_file(path)
        assert len(ranges) == 1
        assert f"{path}:3" in caplog.text

    def test_from_missing_file_is_empty(self, tmp_path):
        ranges = IPRangeSet.from_file(str(tmp_path / "missing.txt"))
        assert len(ranges) == 0
        assert ranges.contains("1.1.1.1") is False
