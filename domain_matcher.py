#!/usr/bin/env python3
# filename: domain_matcher.py
# -----------------------------------------------------------------------------
# Project: SmartDNS Race Proxy
# Version: 1.1.0 (Widest Rule Wins)
# -----------------------------------------------------------------------------
"""
Domain Suffix Matcher for the black/white lists.

A rule 'example.com' matches the name itself and every name below it.
Rules are stored in a label trie keyed from the TLD down; a terminal node
subsumes everything beneath it, so the widest rule always wins regardless
of load order.
"""

from typing import Iterable, Optional

from utils import get_logger, read_list_file, ListSourceUnavailable
from validation import is_valid_domain
from domain_utils import normalize_domain, reversed_labels

logger = get_logger("DomainMatcher")

# Terminal marker; can never collide with a validated label
_END = '$'


class DomainMatcher:
    __slots__ = ('root', 'source')

    def __init__(self, source: Optional[str] = None):
        self.root = {}
        self.source = source or "<memory>"

    @classmethod
    def from_file(cls, file_path: Optional[str]) -> "DomainMatcher":
        """Load a matcher from a list file. A missing source yields an empty matcher."""
        matcher = cls(file_path)
        if not file_path:
            logger.info("No domain list configured, matcher is empty")
            return matcher
        try:
            matcher.load(read_list_file(file_path), numbered=True)
        except ListSourceUnavailable as e:
            logger.warning(f"Error occurred while reading {e}; domain list is empty")
            return matcher
        logger.info(f"Loaded {len(matcher)} domain rules from {file_path}")
        return matcher

    def load(self, lines: Iterable, numbered: bool = False) -> int:
        """
        Insert every rule in lines. Comment and empty lines are skipped.

        With numbered=True, lines are (line_number, text) pairs as produced
        by read_list_file, used for diagnostics.

        Returns:
            Number of lines accepted as rules
        """
        accepted = 0
        for idx, item in enumerate(lines, 1):
            line_num, line = item if numbered else (idx, item)
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            if self.insert(line):
                accepted += 1
            else:
                logger.warning(f"File {self.source}:{line_num} is not a valid domain pattern: '{line}'")
        return accepted

    def insert(self, pattern: str) -> bool:
        """Add one domain pattern. Leading '.' or '*.' is accepted and ignored."""
        clean = normalize_domain(pattern).lstrip('*.')
        if not is_valid_domain(clean, allow_underscores=True):
            return False

        node = self.root
        labels = reversed_labels(clean)
        for i, label in enumerate(labels):
            if _END in node:
                # Already contained in a wider rule
                return True
            if i == len(labels) - 1:
                # Narrower rules below this point are now redundant
                node[label] = {_END: True}
                return True
            node = node.setdefault(label, {})
        return True

    def contains(self, domain: str) -> bool:
        node = self.root
        for label in reversed_labels(domain):
            node = node.get(label)
            if node is None:
                return False
            if _END in node:
                return True
        return False

    def __contains__(self, domain: str) -> bool:
        return self.contains(domain)

    def __len__(self) -> int:
        count = 0
        stack = [self.root]
        while stack:
            node = stack.pop()
            if _END in node:
                count += 1
                continue
            stack.extend(node.values())
        return count
