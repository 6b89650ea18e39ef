"""Unit tests for configuration defaults, validation and wiring."""

import asyncio
import socket
from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest

from config_validator import ConfigValidationError, validate_config
from defaults import DEFAULT_CONFIG, merge_with_defaults
from domain_matcher import DomainMatcher
from enforcement import Enforcer
from ip_ranges import IPRangeSet
from server import build_handler, load_config, parse_arguments, start_listeners
from upstream_manager import DNSUpstream, DoHUpstream
from utils import ListSourceUnavailable, parse_listen_url, parse_server_address, read_list_file


class TestDefaults:
    def test_merge_keeps_defaults(self):
        merged = merge_with_defaults({'upstream': {'trusted': {'timeout_ms': 1500}}})
        assert merged['upstream']['trusted'] == {
            'type': 'doh', 'url': 'https://1.1.1.1/dns-query', 'timeout_ms': 1500,
        }
        assert merged['upstream']['domestic']['addr'] == '223.5.5.5:53'
        assert merged['enforcement']['ipset_name'] == 'gfwlist'

    def test_merge_does_not_mutate_defaults(self):
        merge_with_defaults({'server': {'listen': 'dns://127.0.0.1:5353'}})
        assert DEFAULT_CONFIG['server']['listen'] == 'dns://0.0.0.0:53'

    def test_defaults_are_valid(self):
        is_valid, errors, _ = validate_config(merge_with_defaults({}))
        assert is_valid is True
        assert errors == []


class TestValidator:
    """Test ConfigValidator error collection."""

    def errors_for(self, overrides):
        _, errors, warnings = validate_config(merge_with_defaults(overrides))
        return errors, warnings

    def test_not_a_dict(self):
        is_valid, errors, _ = validate_config(["nope"])
        assert is_valid is False

    @pytest.mark.parametrize("overrides,fragment", [
        ({'server': {'listen': 'udp://0.0.0.0:53'}}, "server.listen"),
        ({'server': {'exclusive': 'yes'}}, "server.exclusive"),
        ({'server': {'udp_concurrency': 0}}, "server.udp_concurrency"),
        ({'upstream': {'trusted': {'type': 'dot'}}}, "upstream.trusted.type"),
        ({'upstream': {'domestic': {'type': 'dns', 'addr': 'not-an-ip'}}}, "upstream.domestic.addr"),
        ({'upstream': {'trusted': {'type': 'doh', 'url': 'ftp://x'}}}, "upstream.trusted.url"),
        ({'upstream': {'trusted': {'timeout_ms': -5}}}, "upstream.trusted.timeout_ms"),
        ({'upstream': {'race_timeout_ms': 'soon'}}, "upstream.race_timeout_ms"),
        ({'filtering': {'aaaa_filter': 'ipv6'}}, "filtering.aaaa_filter"),
        ({'filtering': {'block_ptr': 1}}, "filtering.block_ptr"),
        ({'enforcement': {'auto_detect_rst': 'true'}}, "enforcement.auto_detect_rst"),
        ({'enforcement': {'probe_timeout_ms': 0}}, "enforcement.probe_timeout_ms"),
        ({'lists': {'blacklist': 42}}, "lists.blacklist"),
        ({'logging': {'level': 'VERBOSE'}}, "logging.level"),
    ])
    def test_invalid_values(self, overrides, fragment):
        errors, _ = self.errors_for(overrides)
        assert any(fragment in e for e in errors), errors

    def test_missing_list_file_only_warns(self, tmp_path):
        errors, warnings = self.errors_for({'lists': {'cdn_ranges': str(tmp_path / 'none.txt')}})
        assert errors == []
        assert any("lists.cdn_ranges" in w for w in warnings)

    def test_adapter_timeout_beyond_race_deadline_warns(self):
        errors, warnings = self.errors_for({
            'upstream': {'race_timeout_ms': 1000, 'domestic': {'timeout_ms': 3000}},
        })
        assert errors == []
        assert any("upstream.domestic.timeout_ms" in w for w in warnings)

    def test_empty_ipset_name_warns(self):
        errors, warnings = self.errors_for({'enforcement': {'ipset_name': ''}})
        assert errors == []
        assert any("enforcement is disabled" in w for w in warnings)


class TestLoadConfig:
    def test_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "server:\n"
            "  listen: dns://127.0.0.1:5353\n"
            "filtering:\n"
            "  aaaa_filter: china\n",
            encoding='utf-8'
        )
        config = load_config(str(path))
        assert config['server']['listen'] == 'dns://127.0.0.1:5353'
        assert config['server']['exclusive'] is True
        assert config['filtering']['aaaa_filter'] == 'china'

    def test_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_bytes(orjson.dumps({'enforcement': {'ipset_name': 'proxy'}}))
        config = load_config(str(path))
        assert config['enforcement']['ipset_name'] == 'proxy'
        assert config['enforcement']['auto_detect_rst'] is True

    def test_empty_file_is_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding='utf-8')
        assert load_config(str(path)) == merge_with_defaults({})

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding='utf-8')
        with pytest.raises(ConfigValidationError):
            load_config(str(path))

    def test_arguments(self):
        args = parse_arguments(["-c", "proxy.yaml", "--skip-validation"])
        assert args.config == "proxy.yaml"
        assert args.skip_validation is True
        assert args.validate_only is False


class TestBuildHandler:
    def test_wiring_with_missing_lists(self, tmp_path):
        """Unreadable lists degrade to empty matchers without aborting."""
        config = merge_with_defaults({
            'lists': {
                'cdn_ranges': str(tmp_path / 'cdn.txt'),
                'domestic_ranges': str(tmp_path / 'chnroute.txt'),
                'blacklist': str(tmp_path / 'gfwlist.txt'),
                'whitelist': '',
            },
        })
        handler, upstreams = build_handler(config)

        assert isinstance(handler.blacklist, DomainMatcher)
        assert len(handler.blacklist) == 0
        assert isinstance(handler.cdn_ranges, IPRangeSet)
        assert isinstance(upstreams[0], DoHUpstream)
        assert isinstance(upstreams[1], DNSUpstream)
        assert isinstance(handler.enforcer, Enforcer)
        assert handler.race_timeout == 5.0

    def test_wiring_loads_lists(self, list_file):
        config = merge_with_defaults({
            'lists': {
                'blacklist': list_file('gfwlist.txt', ['google.com']),
                'whitelist': list_file('chinalist.txt', ['baidu.com']),
                'cdn_ranges': list_file('cdnip.txt', ['104.16.0.0/12']),
                'domestic_ranges': list_file('chnroute.txt', ['1.0.1.0/24']),
            },
        })
        handler, _ = build_handler(config)

        assert "www.google.com" in handler.blacklist
        assert "baidu.com" in handler.whitelist
        assert handler.cdn_ranges.contains("104.16.0.1")
        assert handler.domestic_ranges.contains("1.0.1.1")


class TestListeners:
    """Test start_listeners() bind handling."""

    async def test_exclusive_bind_on_taken_port_exits(self):
        holder = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        holder.bind(("127.0.0.1", 0))
        port = holder.getsockname()[1]
        try:
            with pytest.raises(SystemExit) as exc_info:
                await start_listeners(MagicMock(), {
                    'listen': f'dns://127.0.0.1:{port}', 'exclusive': True,
                })
        finally:
            holder.close()

        assert exc_info.value.code == 1

    async def test_shared_bind_requests_reuse_port(self, monkeypatch):
        loop = asyncio.get_running_loop()
        endpoint = AsyncMock(return_value=(MagicMock(), MagicMock()))
        monkeypatch.setattr(loop, "create_datagram_endpoint", endpoint)

        transports, servers = await start_listeners(MagicMock(), {
            'listen': 'dns://127.0.0.1:5353', 'exclusive': False,
        })

        assert len(transports) == 1
        assert servers == []
        assert endpoint.call_args.kwargs['local_addr'] == ("127.0.0.1", 5353)
        assert endpoint.call_args.kwargs['reuse_port'] is True

    async def test_exclusive_bind_does_not_share_port(self, monkeypatch):
        loop = asyncio.get_running_loop()
        endpoint = AsyncMock(return_value=(MagicMock(), MagicMock()))
        monkeypatch.setattr(loop, "create_datagram_endpoint", endpoint)

        await start_listeners(MagicMock(), {'listen': 'dns://127.0.0.1:5353'})

        assert endpoint.call_args.kwargs['reuse_port'] is None


class TestUtils:
    @pytest.mark.parametrize("listen,expected", [
        ("dns://0.0.0.0:53", ("0.0.0.0", 53)),
        ("dns://127.0.0.1", ("127.0.0.1", 53)),
        ("dns://[::1]:5353", ("::1", 5353)),
        ("127.0.0.1:5300", ("127.0.0.1", 5300)),
    ])
    def test_parse_listen_url(self, listen, expected):
        assert parse_listen_url(listen) == expected

    def test_parse_listen_url_rejects_other_schemes(self):
        with pytest.raises(ValueError):
            parse_listen_url("https://0.0.0.0:443")

    @pytest.mark.parametrize("addr,expected", [
        ("223.5.5.5", ("223.5.5.5", 53)),
        ("223.5.5.5:5353", ("223.5.5.5", 5353)),
        ("[2400:3200::1]:53", ("2400:3200::1", 53)),
        ("2400:3200::1", ("2400:3200::1", 53)),
    ])
    def test_parse_server_address(self, addr, expected):
        assert parse_server_address(addr) == expected

    def test_read_list_file(self, list_file):
        path = list_file("list.txt", ["# header", "", "a.com", "  b.com  "])
        assert list(read_list_file(path)) == [(3, "a.com"), (4, "b.com")]

    def test_read_missing_list_file(self, tmp_path):
        with pytest.raises(ListSourceUnavailable):
            list(read_list_file(str(tmp_path / "missing.txt")))
