#!/usr/bin/env python3
# filename: defaults.py
# Version: 1.2.0 (Race Proxy Sections)
"""
Default configuration values - single source of truth.
"""

import copy

DEFAULT_CONFIG = {
    'server': {
        'listen': 'dns://0.0.0.0:53',
        'exclusive': True,
        'enable_tcp': False,
        'udp_concurrency': 1000
    },
    'upstream': {
        'race_timeout_ms': 5000,
        'connection_limit': 20,
        'trusted': {
            'type': 'doh',
            'url': 'https://1.1.1.1/dns-query',
            'timeout_ms': 4000
        },
        'domestic': {
            'type': 'dns',
            'addr': '223.5.5.5:53',
            'timeout_ms': 4000
        }
    },
    'lists': {
        'cdn_ranges': 'ipdb/cdnip.txt',
        'domestic_ranges': 'ipdb/chnroute.txt',
        'blacklist': 'ipdb/gfwlist.txt',
        'whitelist': 'ipdb/chinalist.txt'
    },
    'filtering': {
        'aaaa_filter': 'off',
        'block_ptr': True
    },
    'enforcement': {
        'ipset_name': 'gfwlist',
        'ipset_command': '/usr/sbin/ipset',
        'auto_detect_rst': True,
        'probe_timeout_ms': 10000
    },
    'logging': {
        'level': 'INFO',
        'enable_console': True,
        'console_timestamp': True,
        'enable_file': False,
        'file_path': './smartdns.log',
        'enable_syslog': False,
        'syslog_address': '/dev/log',
        'syslog_protocol': 'UDP'
    }
}


def merge_with_defaults(config: dict) -> dict:
    """
    Merge user configuration with defaults.

    Args:
        config: User configuration dictionary

    Returns:
        Merged configuration with defaults filled in
    """
    merged = copy.deepcopy(DEFAULT_CONFIG)

    for key, value in (config or {}).items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value

    return merged


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base"""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
