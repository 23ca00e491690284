#!/usr/bin/env python3
# filename: server.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 3.0.0
# -----------------------------------------------------------------------------
"""
Main Server Module: UDP/TCP listeners in front of the fallback engine.
"""

import asyncio
import argparse
import os
import signal
import sys
from typing import Any

import yaml

from config_validator import validate_config
from defaults import merge_with_defaults
from dns_cache import DNSCache
from fallback_config import load_fallback_config
from fallback_engine import FallbackEngine
from resolver import DNSHandler
from upstream_manager import UpstreamManager
from utils import setup_logger, get_server_ips, get_logger

logger = get_logger("Server")


class UDPServer(asyncio.DatagramProtocol):
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
    parser = argparse.ArgumentParser(description="Contamination Fallback DNS Server")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to YAML config file")
    parser.add_argument("--validate-only", action="store_true", help="Validate configuration and exit")
    parser.add_argument("--skip-validation", action="store_true", help="Skip configuration validation on startup")
    return parser.parse_args(argv)


def load_config(path: str) -> dict:
    """Read the YAML file and fill in defaults. Raises OSError/yaml.YAMLError."""
    with open(path, 'r') as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"top level of {path} must be a mapping")
    return merge_with_defaults(config)


async def main() -> None:
    args = parse_arguments()
    config: dict[str, Any] = merge_with_defaults({})

    logger.info(">>> Phase 1: Configuration Loading")
    if os.path.exists(args.config):
        try:
            config = load_config(args.config)
            logger.info(f"Loaded configuration from {args.config}")
        except (OSError, ValueError, yaml.YAMLError) as e:
            print(f"FATAL: Error loading config file: {e}")
            sys.exit(1)
    else:
        print(f"Config not found at {args.config}")
        if not args.validate_only:
            print("Using internal defaults")
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
    logger.info("Starting Fallback DNS Server v3.0.0")

    logger.info(">>> Phase 2: Component Initialization")
    server_cfg = config.get('server', {})
    listen_ips = get_server_ips(config)

    data_dir = server_cfg.get('data_dir', './data')
    os.makedirs(data_dir, exist_ok=True)

    upstream_cfg = config.get('upstream', {})
    timeout = upstream_cfg.get('timeout', 5)
    upstream = UpstreamManager.from_urls(upstream_cfg.get('servers', []), timeout=timeout, label="Direct")
    if not upstream:
        logger.error("No usable upstream servers, every query will fail with SERVFAIL")

    cache_cfg = config.get('cache', {})
    cache = DNSCache(
        size=cache_cfg.get('size', 10000),
        negative_ttl=cache_cfg.get('negative_ttl', 60),
        min_ttl=cache_cfg.get('min_ttl', 0),
        max_ttl=cache_cfg.get('max_ttl', 86400),
        gc_interval=cache_cfg.get('gc_interval', 300)
    )
    cache.start()

    engine = FallbackEngine.from_settings(load_fallback_config(config.get('fallback')), data_dir, timeout=timeout)
    engine.start()

    handler = DNSHandler(engine, upstream, cache)

    logger.info(">>> Phase 3: Starting Listeners")
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    servers = []
    transports = []

    def get_ports(key: str, default: list[int]) -> list[int]:
        val = server_cfg.get(key, default)
        return val if isinstance(val, list) else [val]

    udp_ports = get_ports('port_udp', [53])
    tcp_ports = get_ports('port_tcp', [53])
    udp_concurrency = server_cfg.get('udp_concurrency', 1000)

    for ip in listen_ips:
        for port in udp_ports:
            try:
                transport, _ = await loop.create_datagram_endpoint(
                    lambda h=ip, p=port: UDPServer(handler, h, p, max_concurrent=udp_concurrency),
                    local_addr=(ip, port)
                )
                transports.append(transport)
                logger.info(f"✓ UDP Listening on {ip}:{port}")
            except OSError as e:
                logger.error(f"✗ UDP Bind Error {ip}:{port}: {e}")

        for port in tcp_ports:
            try:
                server = await asyncio.start_server(
                    TCPServer(handler, ip, port).handle_client,
                    ip, port
                )
                servers.append(server)
                logger.info(f"✓ TCP Listening on {ip}:{port}")
            except OSError as e:
                logger.error(f"✗ TCP Bind Error {ip}:{port}: {e}")

    if not transports and not servers:
        logger.critical("No listener could be started, exiting")
        await engine.stop()
        cache.stop()
        await upstream.close()
        sys.exit(1)

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
    await engine.stop()
    cache.stop()
    cache.log_stats()
    await upstream.close()
    logger.info("Server stopped.")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
