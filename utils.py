#!/usr/bin/env python3
# filename: utils.py
# -----------------------------------------------------------------------------
# Project: SmartDNS Race Proxy
# Version: 1.2.0 (List Reader + Listen URL Parsing)
# -----------------------------------------------------------------------------
"""
Utility functions: logging setup, list file reading and address helpers.
"""

import logging
import logging.handlers
import ipaddress
from pathlib import Path
from typing import Iterator, Tuple
from urllib.parse import urlparse

from validation import is_valid_ip

# Global logger dictionary
_loggers = {}


class ListSourceUnavailable(Exception):
    """Raised when a list file cannot be opened or read"""
    pass


def setup_logger(config):
    """Configure logging based on config."""
    log_config = config.get('logging', {})
    level_str = log_config.get('level', 'INFO').upper()
    level = getattr(logging, level_str, logging.INFO)

    # Root logger configuration
    root_logger = logging.getLogger('DNSFilter')
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    # Console handler
    if log_config.get('enable_console', True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)

        if log_config.get('console_timestamp', True):
            formatter = logging.Formatter('%(asctime)s [%(levelname)s] [%(name)s] %(message)s')
        else:
            formatter = logging.Formatter('[%(levelname)s] [%(name)s] %(message)s')

        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    # File handler
    if log_config.get('enable_file', False):
        file_path = log_config.get('file_path', './smartdns.log')
        try:
            file_handler = logging.FileHandler(file_path)
            file_handler.setLevel(level)
            formatter = logging.Formatter('%(asctime)s [%(levelname)s] [%(name)s] %(message)s')
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except Exception as e:
            print(f"Failed to setup file logging: {e}")

    # Syslog handler
    if log_config.get('enable_syslog', False):
        try:
            syslog_addr = log_config.get('syslog_address', '/dev/log')
            if syslog_addr.startswith('/'):
                syslog_handler = logging.handlers.SysLogHandler(address=syslog_addr)
            else:
                host, port = syslog_addr.split(':')
                protocol = log_config.get('syslog_protocol', 'UDP').upper()
                socktype = logging.handlers.socket.SOCK_DGRAM if protocol == 'UDP' else logging.handlers.socket.SOCK_STREAM
                syslog_handler = logging.handlers.SysLogHandler(
                    address=(host, int(port)),
                    socktype=socktype
                )

            syslog_handler.setLevel(level)
            formatter = logging.Formatter('[%(name)s] %(message)s')
            syslog_handler.setFormatter(formatter)
            root_logger.addHandler(syslog_handler)
        except Exception as e:
            print(f"Failed to setup syslog: {e}")

def get_logger(name):
    """Get or create a logger with the given name."""
    full_name = f"DNSFilter.{name}"
    if full_name not in _loggers:
        _loggers[full_name] = logging.getLogger(full_name)
    return _loggers[full_name]

class ContextAdapter(logging.LoggerAdapter):
    """Logger adapter that adds context to log messages."""
    def process(self, msg, kwargs):
        ctx = self.extra
        prefix_parts = []
        if 'id' in ctx:
            prefix_parts.append(f"[ID:{ctx['id']}]")
        if 'ip' in ctx:
            prefix_parts.append(f"[IP:{ctx['ip']}]")
        if 'proto' in ctx:
            prefix_parts.append(f"[PROTO:{ctx['proto']}]")

        prefix = ' '.join(prefix_parts)
        return f"{prefix} {msg}" if prefix else msg, kwargs

def read_list_file(file_path) -> Iterator[Tuple[int, str]]:
    """
    Read a line-oriented list file.

    Yields (line_number, line) for every line that is not empty and does
    not start with '#'. Line numbers are 1-based and count skipped lines.

    Raises:
        ListSourceUnavailable: the file cannot be opened or decoded
    """
    path = Path(file_path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            lines = f.read().splitlines()
    except (OSError, UnicodeDecodeError) as e:
        raise ListSourceUnavailable(f"{file_path}: {e}") from e

    for line_num, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        yield line_num, line

def expand_ipv6_address(address: str) -> str:
    """
    Expand a compressed IPv6 address to its full 8-group form.

    Embedded IPv4 tails are converted to hex groups. Non-IPv6 input is
    returned unchanged.

        >>> expand_ipv6_address("2001:db8::1")
        '2001:0db8:0000:0000:0000:0000:0000:0001'
    """
    if ':' not in address:
        return address
    try:
        return ipaddress.IPv6Address(address).exploded
    except ValueError:
        return address

def parse_server_address(addr: str, default_port: int = 53) -> Tuple[str, int]:
    """Split 'ip', 'ip:port' or '[ipv6]:port' into (ip, port)."""
    addr = addr.strip()
    if is_valid_ip(addr):
        return addr.strip('[]'), default_port

    parsed = urlparse(f"dns://{addr}")
    host = parsed.hostname
    if not host or not is_valid_ip(host):
        raise ValueError(f"Server address '{addr}' is not an IP literal")
    return host, parsed.port or default_port

def parse_listen_url(listen: str) -> Tuple[str, int]:
    """Parse 'dns://host:port' (scheme optional) into (host, port)."""
    to_parse = listen if '://' in listen else f"dns://{listen}"
    parsed = urlparse(to_parse)
    if parsed.scheme.lower() != 'dns':
        raise ValueError(f"Unsupported listen scheme '{parsed.scheme}' (expected dns://)")
    host = parsed.hostname or '0.0.0.0'
    return host, parsed.port or 53
