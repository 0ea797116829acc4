"""Tests for DetectionEngine: wiring, isolation, malformed data, batch pass."""

import threading
from unittest.mock import patch

from structlog.testing import capture_logs

from netwatch.config import DetectionConfig
from netwatch.engine import DetectionEngine
from netwatch.models import AlertKind, PacketRecord, Protocol, Severity
from netwatch.rules import Rule
from netwatch.rules.large_packet import LargePacket
from netwatch.sinks import RecentPacketBuffer
from netwatch.trackers import minute_bucket

NOW = 1_700_000_010.0


def _packet(source_ip="203.0.113.50", dest_ip="192.168.1.100", dest_port=80,
            size=64, protocol=Protocol.TCP, at=NOW):
    return PacketRecord(source_ip=source_ip, dest_ip=dest_ip, source_port=12345,
                        dest_port=dest_port, protocol=protocol, size_bytes=size,
                        captured_at=at)


class _Exploding(Rule):
    id = "exploding"
    name = "Exploding"
    kind = AlertKind.SYSTEM_OVERLOAD
    severity = Severity.LOW

    def evaluate(self, packet, registry, config, now):
        raise RuntimeError("boom")


class _Collector(list):
    def __call__(self, candidate):
        self.append(candidate)


# ---------------------------------------------------------------------------
# Per-packet path
# ---------------------------------------------------------------------------

class TestIngest:
    def setup_method(self):
        self.sink = _Collector()
        self.engine = DetectionEngine(alert_sink=self.sink)

    def test_normal_packet_produces_nothing(self):
        assert self.engine.ingest(_packet(), now=NOW) == []
        assert self.sink == []

    def test_candidates_forwarded_to_sink(self):
        out = self.engine.ingest(_packet(size=8000), now=NOW)
        assert [c.kind for c in out] == [AlertKind.LARGE_PACKET]
        assert self.sink == out

    def test_one_packet_can_trip_several_rules_in_order(self):
        self.engine.config.update(connection_attempt_threshold=3)
        self.engine.ingest(_packet(dest_port=22), now=NOW)
        self.engine.ingest(_packet(dest_port=3306), now=NOW)
        out = self.engine.ingest(_packet(dest_port=6379, size=9000), now=NOW)
        assert [c.kind for c in out] == [
            AlertKind.LARGE_PACKET,
            AlertKind.SUSPICIOUS_CONNECTION,
            AlertKind.MULTIPLE_FAILED_ATTEMPTS,
        ]

    def test_port_scan_end_to_end(self):
        kinds = []
        for port in range(1000, 1010):
            kinds += [c.kind for c in self.engine.ingest(_packet(dest_port=port), now=NOW)]
        assert kinds == [AlertKind.PORT_SCAN]

    def test_disabled_engine_is_a_noop(self):
        self.engine.config.update(enable_auto_detection=False)
        assert self.engine.ingest(_packet(size=8000), now=NOW) == []
        assert self.engine.registry.counts()["connection_trackers"] == 0
        assert self.sink == []

    def test_missing_address_is_skipped(self):
        assert self.engine.ingest(_packet(source_ip=""), now=NOW) == []
        assert self.engine.registry.counts()["connection_trackers"] == 0


class TestRuleIsolation:
    def test_failing_rule_does_not_stop_the_others(self):
        engine = DetectionEngine(rules=[_Exploding(), LargePacket()])
        with capture_logs() as logs:
            out = engine.ingest(_packet(size=5000), now=NOW)
        assert [c.kind for c in out] == [AlertKind.LARGE_PACKET]
        failures = [e for e in logs if e["event"] == "rule_failed"]
        assert failures and failures[0]["rule_id"] == "exploding"

    def test_failing_sink_does_not_raise(self):
        def sink(candidate):
            raise RuntimeError("sink down")

        engine = DetectionEngine(alert_sink=sink)
        out = engine.ingest(_packet(size=5000), now=NOW)
        assert len(out) == 1

    def test_metrics_failure_keeps_candidates(self):
        sink = _Collector()
        engine = DetectionEngine(rules=[LargePacket()], alert_sink=sink)
        with patch("netwatch.engine.metrics") as broken, capture_logs() as logs:
            broken.packets_ingested.labels.side_effect = RuntimeError("registry closed")
            out = engine.ingest(_packet(size=5000), now=NOW)
        assert [c.kind for c in out] == [AlertKind.LARGE_PACKET]
        assert sink == out
        assert any(e["event"] == "ingest_metrics_failed" for e in logs)


class TestConcurrentIngest:
    THREADS = 8
    PER_THREAD = 500

    def setup_method(self):
        self.sink = _Collector()
        self.engine = DetectionEngine(alert_sink=self.sink)

    def test_parallel_ingest_from_one_source_counts_every_attempt(self):
        barrier = threading.Barrier(self.THREADS)

        def worker():
            barrier.wait()
            for _ in range(self.PER_THREAD):
                self.engine.ingest(_packet(dest_port=22), now=NOW)

        threads = [threading.Thread(target=worker) for _ in range(self.THREADS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        brute_force = [c for c in self.sink if c.kind is AlertKind.MULTIPLE_FAILED_ATTEMPTS]
        assert len(brute_force) == self.THREADS * self.PER_THREAD // 50
        traffic = self.engine.registry.find_traffic_tracker(minute_bucket(NOW))
        assert traffic.packet_count == self.THREADS * self.PER_THREAD


class TestIngestRaw:
    def setup_method(self):
        self.engine = DetectionEngine()

    def test_valid_record(self):
        out = self.engine.ingest_raw(_packet(size=5000).to_dict(), now=NOW)
        assert [c.kind for c in out] == [AlertKind.LARGE_PACKET]

    def test_malformed_record_is_skipped(self):
        with capture_logs() as logs:
            assert self.engine.ingest_raw({"dest_ip": "1.2.3.4"}, now=NOW) == []
            assert self.engine.ingest_raw({"source_ip": "a", "dest_ip": "b",
                                           "size_bytes": "huge"}, now=NOW) == []
        assert [e["event"] for e in logs] == ["packet_malformed", "packet_malformed"]
        assert self.engine.registry.counts()["connection_trackers"] == 0

    def test_decode_returns_none_for_non_mapping(self):
        assert self.engine.decode(["not", "a", "packet"]) is None


# ---------------------------------------------------------------------------
# Periodic path
# ---------------------------------------------------------------------------

class TestPeriodicAnalysis:
    def setup_method(self):
        self.sink = _Collector()
        self.buffer = RecentPacketBuffer(max_age_seconds=3600)
        self.engine = DetectionEngine(alert_sink=self.sink, packet_source=self.buffer)

    def test_protocol_flood_from_recent_packets(self):
        for i in range(8):
            self.buffer.append(_packet(source_ip=f"192.168.1.{i}", protocol=Protocol.ICMP,
                                       at=NOW - i))
        for i in range(2):
            self.buffer.append(_packet(source_ip=f"192.168.2.{i}", at=NOW - i))
        out = self.engine.periodic_analysis(now=NOW)
        assert [c.kind for c in out] == [AlertKind.PROTOCOL_FLOOD]
        assert out[0].evidence["protocol"] == "ICMP"
        assert self.sink == out

    def test_only_the_analysis_window_is_used(self):
        for i in range(10):
            self.buffer.append(_packet(protocol=Protocol.ICMP, at=NOW - 900 - i))
        assert self.engine.periodic_analysis(now=NOW) == []

    def test_no_packet_source(self):
        assert DetectionEngine().periodic_analysis(now=NOW) == []

    def test_disabled(self):
        self.buffer.append(_packet(protocol=Protocol.ICMP))
        self.engine.config.update(enable_auto_detection=False)
        assert self.engine.periodic_analysis(now=NOW) == []

    def test_source_failure_is_logged(self):
        class Broken:
            def query_recent_packets(self, window_seconds, now=None):
                raise ConnectionError("db down")

        engine = DetectionEngine(packet_source=Broken())
        with capture_logs() as logs:
            assert engine.periodic_analysis(now=NOW) == []
        assert any(e["event"] == "periodic_analysis_failed" for e in logs)


class TestStatus:
    def test_status_reports_trackers_and_config(self):
        engine = DetectionEngine(DetectionConfig(port_scan_threshold=7))
        engine.ingest(_packet(), now=NOW)
        status = engine.status()
        assert status["auto_detection_enabled"] is True
        assert status["active_connection_trackers"] == 1
        assert status["active_port_scan_trackers"] == 1
        assert status["active_traffic_trackers"] == 1
        assert status["config"]["port_scan_threshold"] == 7
