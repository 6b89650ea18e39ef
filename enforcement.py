#!/usr/bin/env python3
# filename: enforcement.py
# -----------------------------------------------------------------------------
# Project: SmartDNS Race Proxy
# Version: 1.2.0 (First-Settled RST Probe)
# -----------------------------------------------------------------------------
"""
Poisoning probe and ipset enforcement sink.

rst_check() detects TCP reset injection by racing a plain HTTP HEAD against
an HTTPS HEAD to the literal IP a resolver returned. The Enforcer decides,
per address, whether to probe first or add to the set straight away.
"""

import asyncio
import errno
import time
from typing import Optional

import httpx

from utils import get_logger

logger = get_logger("Enforcement")

PROBE_HEADERS = {'User-Agent': 'SmartDNS-Race-Proxy'}


class EnforcementCommandFailure(Exception):
    pass


class AlreadyInSet(EnforcementCommandFailure):
    pass


def _is_connection_reset(exc: BaseException) -> bool:
    """Walk the exception chain looking for an ECONNRESET."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, ConnectionResetError):
            return True
        if isinstance(exc, OSError) and exc.errno == errno.ECONNRESET:
            return True
        exc = exc.__cause__ or exc.__context__
    return False


async def _probe(client: httpx.AsyncClient, url: str, host: str) -> bool:
    headers = dict(PROBE_HEADERS)
    headers['Host'] = host
    extensions = {}
    if url.startswith('https:'):
        # TLS SNI would otherwise carry the literal IP from the URL
        extensions['sni_hostname'] = host
    try:
        response = await client.head(url, headers=headers, extensions=extensions)
    except (httpx.HTTPError, OSError) as e:
        reset = _is_connection_reset(e)
        logger.debug(f"Probe {url} (Host: {host}) failed: {type(e).__name__} reset={reset}")
        return reset
    logger.debug(f"Probe {url} (Host: {host}) got HTTP {response.status_code}")
    return False


async def rst_check(host: str, ip: str, timeout: float = 10.0,
                    client: Optional[httpx.AsyncClient] = None) -> bool:
    """
    Probe ip on ports 80 and 443 with 'Host: host' (and SNI host on 443).

    Returns True when the first branch to settle was reset, False when it got
    any HTTP response or failed in any other way. Certificates are not
    verified; the point is to reach the literal IP.
    """
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(verify=False, timeout=httpx.Timeout(timeout))

    url_ip = f"[{ip}]" if ':' in ip else ip
    tasks = [
        asyncio.create_task(_probe(client, f"http://{url_ip}:80/", host)),
        asyncio.create_task(_probe(client, f"https://{url_ip}:443/", host)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        # Same-tick completions resolve in branch order (http first)
        winner = next(t for t in tasks if t in done)
        return winner.result()
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if own_client:
            await client.aclose()


class IpsetSink:
    """Runs '<command> add <set> <ip>' for each enforced address."""

    def __init__(self, command: str = '/usr/sbin/ipset'):
        self.command = command

    async def _run(self, set_name: str, ip: str):
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command, 'add', set_name, ip,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            _, stderr = await proc.communicate()
        except OSError as e:
            raise EnforcementCommandFailure(f"cannot run {self.command}: {e}")
        if proc.returncode != 0:
            detail = stderr.decode('utf-8', errors='replace').strip()
            if 'already added' in detail:
                raise AlreadyInSet(detail)
            raise EnforcementCommandFailure(f"exit code {proc.returncode}: {detail}")

    async def add(self, set_name: str, ip: str) -> bool:
        try:
            await self._run(set_name, ip)
        except AlreadyInSet:
            logger.debug(f"{ip} is already in the set {set_name}")
            return True
        except EnforcementCommandFailure as e:
            logger.error(f"An error occurred when adding {ip} to the set {set_name}: {e}")
            return False
        logger.info(f"{ip} was added to the set {set_name}")
        return True


class Enforcer:
    def __init__(self, set_name: Optional[str], sink, auto_detect_rst: bool = True,
                 probe_timeout: float = 10.0, probe=rst_check):
        self.set_name = set_name
        self.sink = sink
        self.auto_detect_rst = auto_detect_rst
        self.probe_timeout = probe_timeout
        self.probe = probe

    @classmethod
    def from_config(cls, enf_cfg: dict) -> "Enforcer":
        return cls(
            enf_cfg.get('ipset_name') or None,
            IpsetSink(enf_cfg.get('ipset_command', '/usr/sbin/ipset')),
            auto_detect_rst=enf_cfg.get('auto_detect_rst', True),
            probe_timeout=int(enf_cfg.get('probe_timeout_ms', 10000)) / 1000.0
        )

    @property
    def enabled(self) -> bool:
        return bool(self.set_name)

    async def enforce(self, ip: str, host: str, probe: bool) -> bool:
        """
        Add ip to the set, after an RST probe when requested and enabled.

        Returns:
            True if the sink accepted the address
        """
        if not self.set_name:
            return False

        if probe and self.auto_detect_rst:
            logger.info(f"Performing HTTP(S) RST Check for {host} on {ip}")
            start = time.monotonic()
            reset = await self.probe(host, ip, self.probe_timeout)
            if not reset:
                elapsed = (time.monotonic() - start) * 1000
                logger.info(f"{host} on {ip} RST Check passed (responded in {elapsed:.0f}ms)")
                return False

        return await self.sink.add(self.set_name, ip)
