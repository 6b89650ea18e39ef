#!/usr/bin/env python3
# filename: upstream_manager.py
# -----------------------------------------------------------------------------
# Project: SmartDNS Race Proxy
# Version: 2.1.0 (Single-Shot Adapters)
# -----------------------------------------------------------------------------
"""
Upstream Resolver Adapter.

Each resolver role (trusted, domestic) is served by one adapter instance.
Adapters are single-shot: one call, one timeout, no retries. Failures are
raised as UpstreamError subclasses and absorbed by safe_resolve() at the
call site, so the judgment engine only ever sees NormalizedAnswer values.
"""

import asyncio
import base64
import time
from typing import Optional

import dns.asyncresolver
import dns.exception
import dns.message
import dns.rdatatype
import dns.resolver
import httpx

from config_validator import ConfigValidationError
from records import NormalizedAnswer, Query, is_supported_type, record_from_rdata
from utils import get_logger, parse_server_address

logger = get_logger("Upstream")

DOH_HEADERS = {
    'Accept': 'application/dns-message',
    'User-Agent': 'SmartDNS-Race-Proxy',
}


class UpstreamError(Exception):
    """Base class for every adapter failure."""


class ResolverTimeout(UpstreamError):
    pass


class ResolverTransportError(UpstreamError):
    def __init__(self, code, detail=None):
        self.code = code
        message = code if detail is None else f"{code}: {detail}"
        super().__init__(message)


class UnimplementedRecordType(UpstreamError):
    def __init__(self, rdtype):
        self.rdtype = rdtype
        super().__init__(f"Unimplemented record type {dns.rdatatype.to_text(rdtype)}")


class DNSUpstream:
    """Plain DNS (UDP, TCP fallback on truncation) through dnspython's async resolver."""

    kind = 'dns'

    def __init__(self, name: str, addr: str, timeout: float):
        self.name = name
        self.ip, self.port = parse_server_address(addr)
        self.timeout = timeout

        self.resolver = dns.asyncresolver.Resolver(configure=False)
        # port must be set before nameservers, which bind to it
        self.resolver.port = self.port
        self.resolver.nameservers = [self.ip]
        self.resolver.lifetime = timeout

    def __repr__(self):
        return f"<DNSUpstream {self.name} dns://{self.ip}:{self.port}>"

    async def resolve(self, request: dns.message.Message, query: Query) -> NormalizedAnswer:
        if not is_supported_type(query.rdtype):
            raise UnimplementedRecordType(query.rdtype)

        try:
            answer = await asyncio.wait_for(
                self.resolver.resolve(query.name, query.rdtype, query.rdclass,
                                      search=False, raise_on_no_answer=True),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise ResolverTimeout(f"{self.name}: no reply within {self.timeout}s")
        except dns.resolver.NoAnswer:
            return NormalizedAnswer(query, (), True)
        except dns.exception.Timeout as e:
            raise ResolverTimeout(f"{self.name}: {e}")
        except dns.exception.DNSException as e:
            raise ResolverTransportError(type(e).__name__, str(e))

        rrset = answer.rrset
        records = tuple(
            record_from_rdata(query.name, rrset.ttl, rdata) for rdata in rrset
        )
        return NormalizedAnswer(query, records, True)

    async def close(self):
        pass


class DoHUpstream:
    """
    DNS-over-HTTPS (RFC 8484 GET) through a shared httpx client.

    The client is created lazily with HTTP/2 enabled unless one is injected,
    in which case its lifetime belongs to the caller.
    """

    kind = 'doh'

    def __init__(self, name: str, url: str, timeout: float,
                 client: Optional[httpx.AsyncClient] = None, conn_limit: int = 20):
        self.name = name
        self.url = url
        self.timeout = timeout
        self.conn_limit = conn_limit
        self.client = client
        self._owns_client = client is None

    def __repr__(self):
        return f"<DoHUpstream {self.name} {self.url}>"

    def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                http2=True,
                verify=True,
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(
                    max_keepalive_connections=self.conn_limit,
                    max_connections=self.conn_limit * 2,
                    keepalive_expiry=30.0
                )
            )
            logger.info(f"DoH client for {self.name} initialized (HTTP/2, KeepAlive)")
        return self.client

    def build_url(self, wire: bytes) -> str:
        payload = base64.urlsafe_b64encode(wire).rstrip(b'=').decode('ascii')
        sep = '&' if '?' in self.url else '?'
        return f"{self.url}{sep}dns={payload}"

    async def resolve(self, request: dns.message.Message, query: Query) -> NormalizedAnswer:
        client = self._ensure_client()
        url = self.build_url(request.to_wire())

        try:
            response = await asyncio.wait_for(
                client.get(url, headers=DOH_HEADERS),
                timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise ResolverTimeout(f"{self.name}: no reply within {self.timeout}s")
        except httpx.HTTPError as e:
            raise ResolverTransportError(type(e).__name__, str(e))

        if response.status_code != 200:
            raise ResolverTransportError(f"HTTP {response.status_code}")

        try:
            reply = dns.message.from_wire(response.content)
        except dns.exception.DNSException as e:
            raise ResolverTransportError("Malformed DoH reply", str(e))

        records = []
        for rrset in reply.answer:
            owner = rrset.name.to_text(omit_final_dot=True)
            for rdata in rrset:
                records.append(record_from_rdata(owner, rrset.ttl, rdata))
        return NormalizedAnswer(query, tuple(records), True)

    async def close(self):
        if self.client is not None and self._owns_client:
            try:
                await self.client.aclose()
                logger.debug(f"DoH client for {self.name} closed")
            except httpx.HTTPError as e:
                logger.debug(f"Error closing DoH client for {self.name}: {e}")
            self.client = None


def create_upstream(name: str, cfg: dict, client: Optional[httpx.AsyncClient] = None,
                    conn_limit: int = 20):
    """
    Build the adapter for one resolver role.

    Args:
        name: Role label used in logs ('TrustDNS', 'ChinaDNS', ...)
        cfg: {type: dns|doh, addr, url, timeout_ms}
        client: Optional shared httpx client for DoH
    """
    kind = str(cfg.get('type', '')).lower()
    timeout = int(cfg.get('timeout_ms', 5000)) / 1000.0

    if kind == 'dns':
        addr = cfg.get('addr')
        if not addr:
            raise ConfigValidationError(f"Upstream '{name}' of type dns requires 'addr'")
        try:
            upstream = DNSUpstream(name, addr, timeout)
        except ValueError as e:
            raise ConfigValidationError(f"Upstream '{name}' has an invalid addr '{addr}': {e}")
    elif kind == 'doh':
        url = cfg.get('url')
        if not url:
            raise ConfigValidationError(f"Upstream '{name}' of type doh requires 'url'")
        upstream = DoHUpstream(name, url, timeout, client=client, conn_limit=conn_limit)
    else:
        raise ConfigValidationError(f"Upstream '{name}' has unknown type '{cfg.get('type')}'")

    logger.info(f"Upstream {name}: {upstream!r} (timeout {timeout:.1f}s)")
    return upstream


async def safe_resolve(upstream, request: dns.message.Message, query: Query,
                       req_logger=None) -> NormalizedAnswer:
    """
    Resolve through upstream and absorb every failure into an empty
    answered=False NormalizedAnswer.
    """
    log = req_logger or logger
    start = time.monotonic()
    try:
        answer = await upstream.resolve(request, query)
    except UpstreamError as e:
        log.warning(f"{upstream.name} failed for {query.name} [{query.type_name}]: {e}")
        return NormalizedAnswer.empty(query)
    except (OSError, dns.exception.DNSException, httpx.HTTPError) as e:
        log.warning(f"{upstream.name} transport error for {query.name} [{query.type_name}]: {e}")
        return NormalizedAnswer.empty(query)

    duration = (time.monotonic() - start) * 1000
    log.debug(f"{upstream.name} answered {query.name} [{query.type_name}] "
              f"with {len(answer.records)} record(s) in {duration:.1f}ms")
    return answer
