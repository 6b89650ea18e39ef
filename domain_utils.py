#!/usr/bin/env python3
# filename: domain_utils.py
# -----------------------------------------------------------------------------
# Project: SmartDNS Race Proxy
# Version: 1.0.1
# -----------------------------------------------------------------------------
"""
Domain name normalization utilities.
Centralizes domain processing to avoid duplicate work.
"""

from typing import List


def normalize_domain(domain: str) -> str:
    """
    Normalize domain name to canonical form.

    - Converts to lowercase
    - Strips trailing dot
    - Strips whitespace

    Args:
        domain: Raw domain name

    Returns:
        Normalized domain name

    Examples:
        >>> normalize_domain("Example.COM.")
        'example.com'
        >>> normalize_domain("  GOOGLE.com  ")
        'google.com'
    """
    if not domain:
        return ""

    return domain.strip().lower().rstrip('.')


def reversed_labels(domain: str) -> List[str]:
    """
    Labels of a normalized domain, most significant (TLD) first.

        >>> reversed_labels("www.Example.com.")
        ['com', 'example', 'www']
    """
    norm = normalize_domain(domain)
    if not norm:
        return []
    return norm.split('.')[::-1]
