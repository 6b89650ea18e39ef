#!/usr/bin/env python3
# filename: resolver.py
# -----------------------------------------------------------------------------
# Project: SmartDNS Race Proxy
# Version: 3.2.0 (Settled Race Judgment)
# -----------------------------------------------------------------------------
"""
Query Race & Judgment Engine.

Flow: Parse -> Entry Filters (PTR, AAAA, Blacklist, Whitelist) -> Race.

Ambiguous queries are sent to the trusted and the domestic resolver at the
same time. Every completion is recorded on a per-query ResolutionState and
judged; the shared race deadline substitutes an empty answer for any side
still missing. Exactly one response leaves the engine per query. Enforcement
(ipset adds, RST probes) runs in background tasks owned by the handler.
"""

import asyncio
import enum
import logging
import time
from typing import Dict, Optional

import dns.exception
import dns.message
import dns.rdatatype

from records import NormalizedAnswer, Query
from upstream_manager import safe_resolve
from utils import get_logger, ContextAdapter

logger = get_logger("Resolver")


class Side(enum.Enum):
    TRUSTED = 'Trusted'
    DOMESTIC = 'Domestic'

    @property
    def opposite(self) -> "Side":
        return Side.DOMESTIC if self is Side.TRUSTED else Side.TRUSTED

    @property
    def label(self) -> str:
        return self.value


class ResolutionState:
    """Per-query race state. Owned by a single DNSHandler._race call."""

    __slots__ = ('request', 'query', 'client', 'start_time', 'answers', 'reply', 'req_logger')

    def __init__(self, request, query: Query, client: str, req_logger, reply: asyncio.Future):
        self.request = request
        self.query = query
        self.client = client
        self.start_time = time.monotonic()
        self.answers: Dict[Side, NormalizedAnswer] = {}
        self.reply = reply
        self.req_logger = req_logger

    @property
    def sent(self) -> bool:
        return self.reply.done()

    @property
    def trusted(self) -> Optional[NormalizedAnswer]:
        return self.answers.get(Side.TRUSTED)

    @property
    def domestic(self) -> Optional[NormalizedAnswer]:
        return self.answers.get(Side.DOMESTIC)


class DNSHandler:
    AAAA_FILTER_MODES = ('off', 'all', 'china', 'foreign')

    def __init__(self, config, trusted, domestic, blacklist, whitelist,
                 cdn_ranges, domestic_ranges, enforcer):
        self.config = config or {}
        self.trusted = trusted
        self.domestic = domestic
        self.blacklist = blacklist
        self.whitelist = whitelist
        self.cdn_ranges = cdn_ranges
        self.domestic_ranges = domestic_ranges
        self.enforcer = enforcer

        upstream_cfg = self.config.get('upstream') or {}
        self.race_timeout = int(upstream_cfg.get('race_timeout_ms', 5000)) / 1000.0

        filtering_cfg = self.config.get('filtering') or {}
        self.block_ptr = filtering_cfg.get('block_ptr', True)
        self.aaaa_filter = str(filtering_cfg.get('aaaa_filter', 'off')).lower()
        if self.aaaa_filter not in self.AAAA_FILTER_MODES:
            self.aaaa_filter = 'off'

        self._tasks = set()

        logger.info(
            f"DNSHandler Ready. Race timeout: {self.race_timeout:.1f}s, AAAA filter: {self.aaaa_filter}, "
            f"PTR block: {self.block_ptr}, Enforcement: {'on' if enforcer.enabled else 'off'}"
        )

    # =========================================================================
    # BACKGROUND TASKS
    # =========================================================================

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task failed: {exc!r}")

    async def drain(self):
        """Wait for every pending enforcement and straggling upstream task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _enforce_all(self, addresses, host: str, probe: bool):
        for addr in addresses:
            self._spawn(self.enforcer.enforce(addr, host, probe))

    # =========================================================================
    # RESPONSES
    # =========================================================================

    def _nodata(self, request) -> bytes:
        return dns.message.make_response(request, recursion_available=True).to_wire()

    def _encode(self, request, answer: NormalizedAnswer, req_logger) -> bytes:
        try:
            return answer.to_response(request).to_wire()
        except (dns.exception.DNSException, ValueError) as e:
            req_logger.error(f"Failed to encode answer for {answer.question.name}: {e}")
            return self._nodata(request)

    def _log_answer(self, req_logger, query: Query, answer: NormalizedAnswer,
                    client: str, source: str, start_time: float):
        if not req_logger.isEnabledFor(logging.INFO):
            return
        elapsed = (time.monotonic() - start_time) * 1000
        prefix = f"Answered[{query.type_name}] {query.name} to {client}:"
        if not answer.records:
            req_logger.info(f"{prefix} NODATA ({source}) +{elapsed:.0f}ms")
            return
        for record in answer.records:
            req_logger.info(f"{prefix} {record.describe()} ({source}) +{elapsed:.0f}ms")

    def _send(self, state: ResolutionState, side: Side):
        """Resolve the state's reply with the answer on side. Later calls are no-ops."""
        if state.sent:
            return
        answer = state.answers[side]
        state.reply.set_result(self._encode(state.request, answer, state.req_logger))
        self._log_answer(state.req_logger, state.query, answer, state.client, side.label, state.start_time)

    # =========================================================================
    # JUDGMENT
    # =========================================================================

    def judge(self, state: ResolutionState, side: Side):
        """Decide on the current partial state after side has arrived."""
        if state.sent:
            return

        this = state.answers[side]
        other = state.answers.get(side.opposite)
        host = state.query.name

        if not this.records:
            if other is None:
                return
            if not other.records:
                self._send(state, side)
            else:
                # An empty side never decides against data on the other side
                self.judge(state, side.opposite)
            return

        addrs = this.addresses()
        if not addrs:
            self._send(state, side)
            return

        if self.domestic_ranges.contains_any(addrs):
            state.req_logger.debug(f"{side.label} answer for {host} is in domestic ranges")
            self._send(state, side)
            return

        if self.cdn_ranges.contains_any(addrs):
            state.req_logger.debug(f"{side.label} answer for {host} is in CDN ranges, probing")
            self._send(state, side)
            self._enforce_all(addrs, host, probe=True)
            return

        if other is None:
            return

        trusted = state.answers[Side.TRUSTED]
        domestic = state.answers[Side.DOMESTIC]
        if side is Side.DOMESTIC and not trusted.records:
            self._send(state, Side.DOMESTIC)
            return

        trusted_addrs = trusted.addresses()
        same = bool(set(trusted_addrs) & set(domestic.addresses()))
        self._send(state, Side.TRUSTED)
        self._enforce_all(trusted_addrs, host, probe=same)

    # =========================================================================
    # RACE
    # =========================================================================

    async def _race(self, request, query: Query, client: str, req_logger) -> bytes:
        loop = asyncio.get_running_loop()
        state = ResolutionState(request, query, client, req_logger, loop.create_future())

        tasks = {
            asyncio.create_task(safe_resolve(self.trusted, request, query, req_logger)): Side.TRUSTED,
            asyncio.create_task(safe_resolve(self.domestic, request, query, req_logger)): Side.DOMESTIC,
        }
        order = list(tasks)
        deadline = loop.time() + self.race_timeout
        pending = set(tasks)

        try:
            while pending and not state.sent:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining,
                                                   return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=order.index):
                    side = tasks[task]
                    try:
                        state.answers[side] = task.result()
                    except Exception as e:
                        req_logger.error(f"{side.label} resolution crashed: {e!r}")
                        state.answers[side] = NormalizedAnswer.empty(query)
                    self.judge(state, side)

            if not state.sent:
                for side in (Side.TRUSTED, Side.DOMESTIC):
                    if side not in state.answers:
                        req_logger.warning(
                            f"{side.label} resolver missed the {self.race_timeout:.1f}s deadline for {query.name}"
                        )
                        state.answers[side] = NormalizedAnswer.empty(query)
                        self.judge(state, side)
        finally:
            # Stragglers complete in the background and are discarded
            for task in pending:
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

        return state.reply.result()

    async def _single(self, upstream, side: Side, request, query: Query, client: str,
                      req_logger, enforce: bool) -> bytes:
        start = time.monotonic()
        answer = await safe_resolve(upstream, request, query, req_logger)
        wire = self._encode(request, answer, req_logger)
        self._log_answer(req_logger, query, answer, client, side.label, start)
        if enforce:
            self._enforce_all(answer.addresses(), query.name, probe=False)
        return wire

    # =========================================================================
    # ENTRY
    # =========================================================================

    def _aaaa_blocked(self, qname: str) -> bool:
        if self.aaaa_filter == 'all':
            return True
        if self.aaaa_filter == 'china':
            return qname not in self.whitelist
        if self.aaaa_filter == 'foreign':
            return qname in self.whitelist
        return False

    async def process_query(self, data, client_addr, meta=None):
        try:
            request = dns.message.from_wire(data)
        except (dns.exception.DNSException, ValueError) as e:
            logger.warning(f"Failed to parse DNS packet from {client_addr}: {e}")
            return None

        if meta is None:
            meta = {}
        client_ip = client_addr[0] if client_addr else "Unknown"
        ctx = {'id': request.id, 'ip': client_ip, 'proto': meta.get('proto', 'udp').upper()}
        req_logger = ContextAdapter(logger, ctx)

        # Additionals are never forwarded or echoed
        request.use_edns(False)
        request.additional = []

        if not request.question:
            req_logger.info("Query without question, answering NODATA")
            return self._nodata(request)

        query = Query.from_message(request)
        req_logger.info(f"QUERY: {query.name} [{query.type_name}]")

        if query.rdtype == dns.rdatatype.PTR and self.block_ptr:
            req_logger.info(f"Answered[PTR] {query.name} to {client_ip}: NODATA (PTR blocked)")
            return self._nodata(request)

        if query.rdtype == dns.rdatatype.AAAA and self._aaaa_blocked(query.name):
            req_logger.info(f"Answered[AAAA] {query.name} to {client_ip}: NODATA (AAAA filter: {self.aaaa_filter})")
            return self._nodata(request)

        if query.name in self.blacklist:
            req_logger.debug(f"{query.name} matched blacklist, trusted resolver only")
            return await self._single(self.trusted, Side.TRUSTED, request, query, client_ip,
                                      req_logger, enforce=True)

        if query.name in self.whitelist:
            req_logger.debug(f"{query.name} matched whitelist, domestic resolver only")
            return await self._single(self.domestic, Side.DOMESTIC, request, query, client_ip,
                                      req_logger, enforce=False)

        return await self._race(request, query, client_ip, req_logger)
