#!/usr/bin/env python3
# filename: server.py
# Version: 1.4.0 (Exclusive Listener Binding)
"""
Main Server Module: configuration loading, component wiring and the
UDP/TCP listeners of the race proxy.
"""

import asyncio
import yaml
import orjson
import sys
import os
import argparse
import signal
from typing import Any, Optional

from domain_matcher import DomainMatcher
from ip_ranges import IPRangeSet
from upstream_manager import create_upstream
from enforcement import Enforcer
from resolver import DNSHandler
from utils import setup_logger, get_logger, parse_listen_url
from config_validator import validate_config, ConfigValidationError
from defaults import merge_with_defaults

__version__ = "1.4.0"

logger = get_logger("Server")


class UDPServer:
    """AsyncIO Datagram Protocol for DNS UDP with Concurrency Limit"""
    def __init__(self, handler, host, port, max_concurrent=1000):
        self.handler = handler
        self.host = host
        self.port = port
        self.transport = None
        self.sem = asyncio.Semaphore(max_concurrent)
        self._tasks = set()

    def connection_made(self, transport):
        self.transport = transport
        logger.debug(f"UDP Transport bound to {self.host}:{self.port}")

    def connection_lost(self, exc):
        if exc:
            logger.warning(f"UDP Transport on {self.host}:{self.port} lost: {exc}")

    def error_received(self, exc):
        logger.debug(f"UDP error on {self.host}:{self.port}: {exc}")

    def datagram_received(self, data, addr):
        if self.sem.locked():
            logger.warning(f"UDP Overload: Dropping packet from {addr}")
            return
        task = asyncio.create_task(self.handle_safe(data, addr))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_safe(self, data, addr):
        async with self.sem:
            await self.handle(data, addr)

    async def handle(self, data, addr):
        try:
            meta = {
                'proto': 'udp',
                'server_ip': self.host,
                'server_port': self.port
            }
            resp = await self.handler.process_query(data, addr, meta)
            if resp and self.transport:
                self.transport.sendto(resp, addr)
        except Exception as e:
            logger.exception(f"Error handling UDP packet from {addr}: {e}")


class TCPServer:
    """AsyncIO Stream Handler for DNS TCP"""
    def __init__(self, handler, host, port):
        self.handler = handler
        self.host = host
        self.port = port

    async def handle_client(self, reader, writer):
        addr = writer.get_extra_info('peername')
        logger.debug(f"TCP Connection from {addr} on {self.host}:{self.port}")

        meta = {
            'proto': 'tcp',
            'server_ip': self.host,
            'server_port': self.port
        }

        try:
            len_bytes = await reader.readexactly(2)
            length = int.from_bytes(len_bytes, 'big')
            data = await reader.readexactly(length)

            resp = await self.handler.process_query(data, addr, meta)

            if resp:
                writer.write(len(resp).to_bytes(2, 'big') + resp)
                await writer.drain()

        except asyncio.IncompleteReadError:
            logger.debug(f"TCP Connection closed prematurely by {addr}")
        except Exception as e:
            logger.exception(f"TCP Error {addr}: {e}")
        finally:
            writer.close()


async def shutdown(sig: signal.Signals, stop_event: asyncio.Event) -> None:
    logger.info(f"Received exit signal {sig.name}...")
    stop_event.set()


def parse_arguments(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SmartDNS Race Proxy")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to YAML (or .json) config file")
    parser.add_argument("--validate-only", action="store_true", help="Validate configuration and exit")
    parser.add_argument("--skip-validation", action="store_true", help="Skip configuration validation on startup")
    return parser.parse_args(argv)


def load_config(path: str) -> dict:
    """Read a YAML or JSON (by extension) config file and merge it over the defaults."""
    with open(path, 'rb') as f:
        raw = f.read()
    if path.lower().endswith('.json'):
        config = orjson.loads(raw) or {}
    else:
        config = yaml.safe_load(raw) or {}
    if not isinstance(config, dict):
        raise ConfigValidationError(f"Top level of {path} must be a mapping")
    return merge_with_defaults(config)


def build_handler(config: dict, doh_client=None):
    """
    Wire lists, upstreams and the enforcer into a DNSHandler.

    Returns:
        (handler, [trusted, domestic])
    """
    lists_cfg = config.get('lists', {})
    blacklist = DomainMatcher.from_file(lists_cfg.get('blacklist'))
    whitelist = DomainMatcher.from_file(lists_cfg.get('whitelist'))
    cdn_ranges = IPRangeSet.from_file(lists_cfg.get('cdn_ranges'))
    domestic_ranges = IPRangeSet.from_file(lists_cfg.get('domestic_ranges'))

    upstream_cfg = config.get('upstream', {})
    conn_limit = upstream_cfg.get('connection_limit', 20)
    trusted = create_upstream('TrustDNS', upstream_cfg.get('trusted', {}), doh_client, conn_limit)
    domestic = create_upstream('ChinaDNS', upstream_cfg.get('domestic', {}), doh_client, conn_limit)

    enforcer = Enforcer.from_config(config.get('enforcement', {}))
    if enforcer.enabled:
        logger.info(f"Enforcement: ipset '{enforcer.set_name}' via {enforcer.sink.command} "
                    f"(RST auto-detect: {enforcer.auto_detect_rst})")
    else:
        logger.info("Enforcement: DISABLED (no ipset_name)")

    handler = DNSHandler(
        config=config,
        trusted=trusted,
        domestic=domestic,
        blacklist=blacklist,
        whitelist=whitelist,
        cdn_ranges=cdn_ranges,
        domestic_ranges=domestic_ranges,
        enforcer=enforcer
    )
    return handler, [trusted, domestic]


async def start_listeners(handler, server_cfg: dict):
    """
    Bind the UDP (always) and TCP (optional) listeners.

    With server.exclusive the sockets are bound without SO_REUSEPORT and any
    bind failure is fatal.
    """
    loop = asyncio.get_running_loop()
    host, port = parse_listen_url(server_cfg.get('listen', 'dns://0.0.0.0:53'))
    exclusive = server_cfg.get('exclusive', True)
    udp_concurrency = server_cfg.get('udp_concurrency', 1000)
    reuse_port = None if exclusive else True

    transports = []
    servers = []

    try:
        transport, _ = await loop.create_datagram_endpoint(
            lambda: UDPServer(handler, host, port, max_concurrent=udp_concurrency),
            local_addr=(host, port),
            reuse_port=reuse_port
        )
        transports.append(transport)
        logger.info(f"✓ UDP Listening on {host}:{port}{' (exclusive)' if exclusive else ''}")
    except OSError as e:
        logger.critical(f"✗ UDP Bind Error {host}:{port}: {e}")
        sys.exit(1)

    if server_cfg.get('enable_tcp', False):
        try:
            server = await asyncio.start_server(
                TCPServer(handler, host, port).handle_client,
                host, port,
                reuse_port=reuse_port
            )
            servers.append(server)
            logger.info(f"✓ TCP Listening on {host}:{port}")
        except OSError as e:
            if exclusive:
                logger.critical(f"✗ TCP Bind Error {host}:{port}: {e}")
                sys.exit(1)
            logger.error(f"✗ TCP Bind Error {host}:{port}: {e}")

    return transports, servers


async def main(argv=None) -> None:
    args = parse_arguments(argv)
    config: dict[str, Any] = {}

    logger.info(">>> Phase 1: Configuration Loading")
    if os.path.exists(args.config):
        try:
            config = load_config(args.config)
            logger.info(f"Loaded configuration from {args.config}")
        except (OSError, yaml.YAMLError, orjson.JSONDecodeError, ConfigValidationError) as e:
            print(f"FATAL: Error loading config file: {e}")
            sys.exit(1)
    else:
        print(f"Config not found at {args.config}")
        if not args.validate_only:
            print("Using internal defaults")
            config = merge_with_defaults({})
        else:
            sys.exit(1)

    if args.validate_only:
        logger.info(">>> Phase 1.5: Configuration Validation")
        is_valid, errors, warnings = validate_config(config)
        if errors:
            logger.error("Configuration validation failed!")
            sys.exit(1)
        print("\n✅ Configuration validation PASSED")
        sys.exit(0)
    elif not args.skip_validation:
        logger.info(">>> Phase 1.5: Configuration Validation")
        is_valid, errors, warnings = validate_config(config)
        if errors:
            logger.error("Configuration validation failed!")
            sys.exit(1)
    else:
        logger.warning("Configuration validation SKIPPED (--skip-validation)")

    setup_logger(config)
    logger.info(f"Starting SmartDNS Race Proxy v{__version__}")

    logger.info(">>> Phase 2: Component Initialization")
    try:
        handler, upstreams = build_handler(config)
    except ConfigValidationError as e:
        logger.critical(f"FATAL: {e}")
        sys.exit(1)

    logger.info(">>> Phase 3: Starting Listeners")
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    transports, servers = await start_listeners(handler, config.get('server', {}))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(shutdown(s, stop_event)))

    logger.info("Server Ready. Press Ctrl+C to stop.")
    await stop_event.wait()

    logger.info("Shutting down...")
    for t in transports:
        t.close()
    for s in servers:
        s.close()
        await s.wait_closed()

    probe_timeout = config.get('enforcement', {}).get('probe_timeout_ms', 10000) / 1000.0
    try:
        await asyncio.wait_for(handler.drain(), timeout=probe_timeout + 1)
    except asyncio.TimeoutError:
        logger.warning("Pending enforcement tasks did not finish before shutdown")

    for upstream in upstreams:
        await upstream.close()
    logger.info("Server stopped.")


def run(argv: Optional[list] = None) -> None:
    try:
        asyncio.run(main(argv))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
