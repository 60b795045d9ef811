"""Unit tests for bridge statistics collection."""

import json
import logging
import threading

from dohbridge.stats import (
    FAILURE_REASONS,
    BridgeStats,
    LatencyHistogram,
    StatsReporter,
    format_snapshot_json,
    qtype_name,
    rcode_name,
)
from dohbridge.version import DOHBRIDGE_VERSION


class TestNames:
    """Numeric codes map to mnemonics."""

    def test_qtype_name(self):
        assert qtype_name(1) == "A"
        assert qtype_name(28) == "AAAA"
        assert qtype_name(65280) == "TYPE65280"

    def test_rcode_name(self):
        assert rcode_name(0) == "NOERROR"
        assert rcode_name(3) == "NXDOMAIN"


class TestLatencyHistogram:
    """Test latency histogram implementation."""

    def test_empty_histogram(self):
        """Empty histogram returns zero stats."""
        stats = LatencyHistogram().summarize()
        assert stats["count"] == 0
        assert stats["p99_ms"] == 0.0

    def test_single_sample(self):
        hist = LatencyHistogram()
        hist.add(0.005)
        stats = hist.summarize()
        assert stats["count"] == 1
        assert 4.5 <= stats["min_ms"] <= 5.5
        assert 4.5 <= stats["max_ms"] <= 5.5

    def test_percentiles_ordered(self):
        hist = LatencyHistogram()
        for ms in (1, 3, 8, 15, 40, 90, 150, 400, 900, 12000):
            hist.add(ms / 1000.0)
        stats = hist.summarize()
        assert stats["count"] == 10
        assert stats["p50_ms"] <= stats["p90_ms"] <= stats["p99_ms"]
        assert stats["max_ms"] == 12000.0


class TestBridgeStats:
    """Counters recorded by the transport and the bridge workers."""

    def test_counters(self):
        s = BridgeStats()
        s.record_received(1)
        s.record_received(28)
        s.record_received()
        s.record_accepted()
        s.record_answered(0)
        s.record_answered(3)
        s.record_failure("format_error")
        s.record_servfail()
        s.record_sent()
        snap = s.snapshot()
        assert snap.totals == {
            "received": 3,
            "accepted": 1,
            "answered": 2,
            "failed": 1,
            "servfail_sent": 1,
            "sent": 1,
        }
        assert snap.qtypes == {"A": 1, "AAAA": 1}
        assert snap.rcodes == {"NOERROR": 1, "NXDOMAIN": 1}
        assert snap.failures == {"format_error": 1}
        assert snap.latency is None

    def test_snapshot_reset(self):
        s = BridgeStats()
        s.record_failure("queue_full")
        s.record_latency(0.02)
        first = s.snapshot(reset=True)
        assert first.failures == {"queue_full": 1}
        assert first.latency["count"] == 1
        second = s.snapshot()
        assert second.failures == {}
        assert second.totals["failed"] == 0
        assert second.latency is None

    def test_threaded_increments(self):
        s = BridgeStats()

        def work():
            for _ in range(500):
                s.record_received(1)

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert s.snapshot().totals["received"] == 2000

    def test_failure_reasons_cover_bridge_and_transport(self):
        for reason in ("format_error", "unsupported_type", "queue_full", "duplicate", "shutdown"):
            assert reason in FAILURE_REASONS


class TestFormatting:
    def test_json_omits_empty_sections(self):
        s = BridgeStats()
        out = json.loads(format_snapshot_json(s.snapshot()))
        assert set(out) == {"ts", "totals", "meta"}
        assert out["meta"]["version"] == DOHBRIDGE_VERSION
        assert out["totals"]["received"] == 0

    def test_json_includes_populated_sections(self):
        s = BridgeStats()
        s.record_received(16)
        s.record_answered(0)
        s.record_failure("resolution_error")
        s.record_latency(0.1)
        out = json.loads(format_snapshot_json(s.snapshot()))
        assert out["qtypes"] == {"TXT": 1}
        assert out["rcodes"] == {"NOERROR": 1}
        assert out["failures"] == {"resolution_error": 1}
        assert out["latency"]["count"] == 1


class TestStatsReporter:
    def test_emit_logs_json_line(self, caplog):
        s = BridgeStats()
        s.record_received(1)
        reporter = StatsReporter(s, interval_seconds=3600, log_level="warning")
        with caplog.at_level(logging.WARNING, logger="dohbridge.stats"):
            reporter.emit()
        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert json.loads(record.getMessage())["totals"]["received"] == 1

    def test_stop_final_emits_and_resets(self, caplog):
        s = BridgeStats()
        s.record_sent()
        reporter = StatsReporter(s, interval_seconds=3600, reset_on_log=True)
        reporter.start()
        with caplog.at_level(logging.INFO, logger="dohbridge.stats"):
            reporter.stop(final=True)
        assert not reporter.is_alive()
        assert any('"sent":1' in r.getMessage() for r in caplog.records)
        assert s.snapshot().totals["sent"] == 0

    def test_interval_floor(self):
        assert StatsReporter(BridgeStats(), interval_seconds=0).interval_seconds == 1
