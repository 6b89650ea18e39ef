#!/usr/bin/env python3
# filename: validation.py
# -----------------------------------------------------------------------------
# Project: SmartDNS Race Proxy
# Version: 1.1.0 (IPv4 CIDR List Lines)
# -----------------------------------------------------------------------------
"""
Validation utilities for addresses, list lines and domain names.
"""

import re
import ipaddress

# Four dotted octets with an optional /0-/32 prefix length
IPV4_CIDR_LINE = re.compile(r'^([0-9]{1,3}\.){3}[0-9]{1,3}(\/([0-9]|[1-2][0-9]|3[0-2]))?$')


def is_valid_ip(ip_str: str) -> bool:
    """
    Validate IP address (handles [IPv6] notation).

    Args:
        ip_str: IP address string, optionally with brackets for IPv6

    Returns:
        True if valid IP address
    """
    cleaned = ip_str.strip('[]')
    try:
        ipaddress.ip_address(cleaned)
        return True
    except ValueError:
        return False


def is_valid_ipv4_cidr_line(line: str) -> bool:
    """
    Validate an IP range list line: 'a.b.c.d' or 'a.b.c.d/nn'.

    The regex only checks shape; octet values are checked by ipaddress so
    that '300.1.1.1' is rejected as well.
    """
    if not IPV4_CIDR_LINE.match(line):
        return False
    try:
        ipaddress.IPv4Network(line, strict=False)
        return True
    except ValueError:
        return False


def is_valid_domain(domain: str, allow_underscores: bool = False) -> bool:
    """
    Validate domain format.

    Args:
        domain: Domain name to validate
        allow_underscores: If True, allow underscores in labels (non-RFC compliant)

    Returns:
        True if valid domain
    """
    if not domain or len(domain) > 253:
        return False

    # Check for invalid characters
    if any(c in domain for c in [' ', '\t', '\n', '\r', '|', '\\', '/']):
        return False

    # Single-label names (TLD rules such as 'cn') are allowed
    for label in domain.split('.'):
        if not label or len(label) > 63:
            return False
        if label.startswith('-') or label.endswith('-'):
            return False

        if allow_underscores:
            if not all(c.isalnum() or c in ('-', '_') for c in label):
                return False
        else:
            if not all(c.isalnum() or c == '-' for c in label):
                return False

    return True
