"""
Thread-safe statistics for the bridge.

Counts every query outcome (answered, failed per reason, sent), response
codes, query types and resolver round-trip latency. The transport loop and
every bridge worker record into one BridgeStats; a StatsReporter thread
periodically logs a JSON snapshot.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dnslib import QTYPE, RCODE

from .version import DOHBRIDGE_VERSION

logger = logging.getLogger("dohbridge.stats")


_PROCESS_START_TIME = time.time()

# Reasons a query ends in the FAILED state.
FAILURE_REASONS = (
    "format_error",
    "resolution_error",
    "malformed_result",
    "unsupported_type",
    "encode_error",
    "queue_full",
    "duplicate",
    "shutdown",
    "internal_error",
)


def get_process_uptime_seconds() -> float:
    """Return process uptime in seconds since this module was imported."""
    return max(0.0, time.time() - _PROCESS_START_TIME)


def qtype_name(qtype: int) -> str:
    """
    Map a numeric record type to its mnemonic.

    Example:
        >>> qtype_name(28)
        'AAAA'
        >>> qtype_name(65280)
        'TYPE65280'
    """
    return str(QTYPE.get(qtype, f"TYPE{qtype}"))


def rcode_name(rcode: int) -> str:
    return str(RCODE.get(rcode, f"rcode{rcode}"))


class LatencyHistogram:
    """
    Histogram of resolver round trips with fixed millisecond bins.

    Bins: [1, 2, 5, 10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000+].
    Not locked on its own; BridgeStats guards it.

    Example:
        >>> hist = LatencyHistogram()
        >>> hist.add(0.015)
        >>> hist.summarize()['count']
        1
    """

    _BINS = [1, 2, 5, 10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000]

    def __init__(self) -> None:
        self.bins: List[int] = [0] * (len(self._BINS) + 1)
        self.count = 0
        self.sum_ms = 0.0
        self.min_ms: Optional[float] = None
        self.max_ms: Optional[float] = None

    def add(self, seconds: float) -> None:
        ms = seconds * 1000.0
        self.count += 1
        self.sum_ms += ms

        if self.min_ms is None or ms < self.min_ms:
            self.min_ms = ms
        if self.max_ms is None or ms > self.max_ms:
            self.max_ms = ms

        for i, threshold in enumerate(self._BINS):
            if ms < threshold:
                self.bins[i] += 1
                return
        self.bins[-1] += 1

    def summarize(self) -> Dict[str, float]:
        """
        Compute summary statistics.

        Outputs:
            Dictionary with keys: count, min_ms, max_ms, avg_ms, p50_ms, p90_ms, p99_ms
        """
        if self.count == 0:
            return {
                "count": 0,
                "min_ms": 0.0,
                "max_ms": 0.0,
                "avg_ms": 0.0,
                "p50_ms": 0.0,
                "p90_ms": 0.0,
                "p99_ms": 0.0,
            }

        return {
            "count": self.count,
            "min_ms": round(self.min_ms or 0.0, 2),
            "max_ms": round(self.max_ms or 0.0, 2),
            "avg_ms": round(self.sum_ms / self.count, 2),
            "p50_ms": round(self._percentile(0.50), 2),
            "p90_ms": round(self._percentile(0.90), 2),
            "p99_ms": round(self._percentile(0.99), 2),
        }

    def _percentile(self, p: float) -> float:
        # Midpoint of the bin holding the p-th sample
        target = max(1, int(self.count * p))
        cumulative = 0
        for i, count in enumerate(self.bins):
            cumulative += count
            if cumulative >= target:
                if i == 0:
                    return self._BINS[0] / 2
                if i < len(self._BINS):
                    return (self._BINS[i - 1] + self._BINS[i]) / 2
                return float(self._BINS[-1])
        return self.max_ms or 0.0


@dataclass(frozen=True)
class StatsSnapshot:
    """
    Point-in-time copy of BridgeStats, created under lock and logged outside it.
    """

    created_at: float
    totals: Dict[str, int]
    failures: Dict[str, int]
    rcodes: Dict[str, int]
    qtypes: Dict[str, int]
    latency: Optional[Dict[str, float]] = None


class BridgeStats:
    """
    Brief: Thread-safe counters for the bridge pipeline.

    Inputs (constructor):
      - None

    Outputs:
      - BridgeStats instance shared by the transport loop and bridge workers

    Example:
        >>> s = BridgeStats()
        >>> s.record_received(1)
        >>> s.record_failure("queue_full")
        >>> snap = s.snapshot()
        >>> snap.totals["received"], snap.failures["queue_full"]
        (1, 1)
    """

    _TOTALS = ("received", "accepted", "answered", "failed", "servfail_sent", "sent")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._totals: Dict[str, int] = {k: 0 for k in self._TOTALS}
        self._failures: Dict[str, int] = defaultdict(int)
        self._rcodes: Dict[str, int] = defaultdict(int)
        self._qtypes: Dict[str, int] = defaultdict(int)
        self._latency = LatencyHistogram()

    def _incr(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._totals[key] = self._totals.get(key, 0) + delta

    def record_received(self, qtype: Optional[int] = None) -> None:
        with self._lock:
            self._totals["received"] += 1
            if qtype is not None:
                self._qtypes[qtype_name(qtype)] += 1

    def record_accepted(self) -> None:
        self._incr("accepted")

    def record_answered(self, rcode: int) -> None:
        with self._lock:
            self._totals["answered"] += 1
            self._rcodes[rcode_name(rcode)] += 1

    def record_failure(self, reason: str) -> None:
        with self._lock:
            self._totals["failed"] += 1
            self._failures[reason] += 1

    def record_servfail(self) -> None:
        self._incr("servfail_sent")

    def record_sent(self) -> None:
        self._incr("sent")

    def record_latency(self, seconds: float) -> None:
        with self._lock:
            self._latency.add(seconds)

    def snapshot(self, reset: bool = False) -> StatsSnapshot:
        """Copy the counters; with reset=True they are zeroed afterwards."""
        with self._lock:
            snap = StatsSnapshot(
                created_at=time.time(),
                totals=dict(self._totals),
                failures=dict(self._failures),
                rcodes=dict(self._rcodes),
                qtypes=dict(self._qtypes),
                latency=self._latency.summarize() if self._latency.count else None,
            )
            if reset:
                self._reset_locked()
        return snap


def format_snapshot_json(snapshot: StatsSnapshot) -> str:
    """
    Format a snapshot as a single JSON line; empty sections are omitted.

    Example:
        >>> s = BridgeStats()
        >>> s.record_answered(0)
        >>> '"NOERROR":1' in format_snapshot_json(s.snapshot())
        True
    """
    ts = datetime.fromtimestamp(snapshot.created_at, tz=timezone.utc).isoformat()

    try:
        hostname = socket.gethostname()
    except Exception:  # pragma: no cover - environment specific
        hostname = "unknown-host"

    output: Dict[str, Any] = {
        "ts": ts,
        "totals": snapshot.totals,
        "meta": {
            "hostname": hostname,
            "version": DOHBRIDGE_VERSION,
            "uptime": round(get_process_uptime_seconds(), 3),
        },
    }
    if snapshot.failures:
        output["failures"] = snapshot.failures
    if snapshot.rcodes:
        output["rcodes"] = snapshot.rcodes
    if snapshot.qtypes:
        output["qtypes"] = snapshot.qtypes
    if snapshot.latency:
        output["latency"] = snapshot.latency

    return json.dumps(output, separators=(",", ":"))


class StatsReporter(threading.Thread):
    """
    Background daemon thread for periodic statistics logging.

    Inputs (constructor):
        stats: BridgeStats instance to snapshot
        interval_seconds: Seconds between log emissions
        reset_on_log: Reset counters after each log
        log_level: Logging level name ("debug", "info", "warning", "error")

    Example:
        >>> reporter = StatsReporter(BridgeStats(), interval_seconds=60)
        >>> reporter.start()
        >>> reporter.stop()
    """

    _LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def __init__(
        self,
        stats: BridgeStats,
        interval_seconds: int = 300,
        reset_on_log: bool = False,
        log_level: str = "info",
        logger_name: str = "dohbridge.stats",
    ) -> None:
        super().__init__(daemon=True, name="StatsReporter")
        self.stats = stats
        self.interval_seconds = max(1, int(interval_seconds))
        self.reset_on_log = reset_on_log
        self.logger = logging.getLogger(logger_name)
        self.log_level = self._LEVELS.get(str(log_level).lower(), logging.INFO)
        self._stop_event = threading.Event()

    def emit(self) -> None:
        snapshot = self.stats.snapshot(reset=self.reset_on_log)
        self.logger.log(self.log_level, format_snapshot_json(snapshot))

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.emit()
            except Exception as e:  # pragma: no cover
                self.logger.error("StatsReporter error: %s", e, exc_info=True)

    def stop(self, timeout: float = 5.0, final: bool = False) -> None:
        """Stop the thread; with final=True log one last snapshot."""
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
        if final:
            self.emit()
