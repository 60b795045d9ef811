from __future__ import annotations

import argparse
import logging
import random
import signal
import sys
import threading
from typing import List, Optional

from dnslib import QTYPE, DNSError, DNSRecord

from .bridge import Bridge
from .codec import build_query, decode_query, encode_response
from .config.config_parser import load_config
from .config.config_schema import BridgeConfig
from .config.logging_config import init_logging
from .errors import BridgeError
from .servers.udp_server import UDPTransport
from .stats import BridgeStats, StatsReporter
from .transports.json_api import ResolverClient


def parse_qtype(text: str) -> int:
    """
    Brief: Accept a record type as a mnemonic ('AAAA') or a number ('28').

    Example:
        >>> parse_qtype("aaaa"), parse_qtype("16")
        (28, 16)
    """
    text = str(text).strip()
    if text.isdigit():
        return int(text)
    try:
        return int(getattr(QTYPE, text.upper()))
    except (AttributeError, DNSError):
        raise ValueError(f"unknown record type {text!r}") from None


def _client_factory(cfg: BridgeConfig):
    r = cfg.resolver

    def factory() -> ResolverClient:
        return ResolverClient(
            r.url,
            timeout_ms=r.timeout_ms,
            verify=r.verify,
            ca_file=r.ca_file,
            headers=dict(r.headers),
        )

    return factory


def _apply_cli_overrides(cfg: BridgeConfig, args: argparse.Namespace) -> None:
    if args.listen:
        cfg.listen.host = args.listen
    if args.port is not None:
        cfg.listen.port = args.port
    if args.url:
        cfg.resolver.url = args.url
    if args.log_level:
        cfg.logging.level = args.log_level
    if args.lockstep:
        cfg.bridge.lockstep = True


def run_probe(cfg: BridgeConfig, name: str, qtype: int) -> int:
    """
    Brief: Push one query through the resolver client and codec, print the result.

    Inputs:
      - cfg: validated configuration
      - name, qtype: what to resolve

    Outputs:
      - int exit code: 0 on success, 1 when resolution or encoding fails
    """
    logger = logging.getLogger("dohbridge.main")
    client = _client_factory(cfg)()
    try:
        query = decode_query(build_query(name, qtype, qid=random.randint(0, 0xFFFF)))
        result = client.resolve(query.name, query.qtype)
        response = encode_response(query, result)
    except BridgeError as exc:
        logger.error("probe %s/%d failed: %s", name, qtype, exc)
        return 1
    finally:
        client.close()
    print(DNSRecord.parse(response.data))
    return 0


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the bridge.
    Parses arguments, loads configuration, starts the bridge and UDP listener
    and blocks until SIGINT/SIGTERM.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code.

    Example use:
        CLI:
            dohbridge --config config.yaml
            dohbridge --port 5353 --url https://cloudflare-dns.com/dns-query
            dohbridge --probe example.com --probe-type AAAA
    """
    parser = argparse.ArgumentParser(description="DNS-over-HTTPS (JSON API) bridge")
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--listen", default=None, help="UDP listen address")
    parser.add_argument("--port", type=int, default=None, help="UDP listen port")
    parser.add_argument("--url", default=None, help="Resolver JSON API URL")
    parser.add_argument("--log-level", default=None, help="debug, info, warn, error")
    parser.add_argument(
        "--lockstep",
        action="store_true",
        help="Admit one datagram at a time and wait for its outcome",
    )
    parser.add_argument(
        "-v",
        "--var",
        dest="vars",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Set a config variable (overrides environment and file)",
    )
    parser.add_argument("--probe", metavar="NAME", help="Resolve NAME once and exit")
    parser.add_argument("--probe-type", default="A", help="Record type for --probe")
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config, cli_vars=args.vars)
    except (ValueError, OSError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    _apply_cli_overrides(cfg, args)

    init_logging(cfg.logging)
    logger = logging.getLogger("dohbridge.main")
    if args.config:
        logger.info("Loaded config from %s", args.config)

    if args.probe:
        try:
            qtype = parse_qtype(args.probe_type)
        except ValueError as exc:
            logger.error("%s", exc)
            return 1
        return run_probe(cfg, args.probe, qtype)

    stats = BridgeStats()
    bridge = Bridge(
        _client_factory(cfg),
        max_in_flight=cfg.bridge.max_in_flight,
        queue_size=cfg.bridge.queue_size,
        preserve_order=cfg.bridge.preserve_order,
        servfail_on_failure=cfg.bridge.servfail_on_failure,
        stats=stats,
    )
    transport = UDPTransport(
        bridge,
        cfg.listen.host,
        cfg.listen.port,
        lockstep=cfg.bridge.lockstep,
        max_datagram=cfg.listen.max_datagram,
        stats=stats,
    )

    reporter: Optional[StatsReporter] = None
    if cfg.statistics.enabled:
        reporter = StatsReporter(
            stats,
            interval_seconds=cfg.statistics.interval_seconds,
            reset_on_log=cfg.statistics.reset_on_log,
            log_level=cfg.statistics.log_level,
        )

    shutdown_event = threading.Event()

    def _request_shutdown(signum, _frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _request_shutdown)
        except ValueError:  # pragma: no cover - not in main thread
            logger.warning("Could not install %s handler", sig)

    bridge.start()
    try:
        transport.start()
    except OSError as exc:
        logger.error(
            "Cannot bind UDP %s:%d: %s", cfg.listen.host, cfg.listen.port, exc
        )
        bridge.stop()
        return 1
    if reporter is not None:
        reporter.start()
        logger.info(
            "Statistics collection enabled (interval: %ds)", reporter.interval_seconds
        )
    logger.info("Forwarding to %s", cfg.resolver.url)

    try:
        while not shutdown_event.wait(1.0):
            pass
    except KeyboardInterrupt:  # pragma: no cover - signal handler normally wins
        pass
    finally:
        transport.stop()
        bridge.stop()
        if reporter is not None:
            reporter.stop(final=True)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
