"""Tests for the in-process store, the recent-packet buffer and the Kafka sink."""

import json

import pytest

from netwatch.errors import PersistenceError
from netwatch.main import KafkaAlertSink
from netwatch.models import AlertCandidate, AlertKind, PacketRecord, Severity
from netwatch.sinks import InMemoryAlertStore, RecentPacketBuffer

NOW = 1_700_000_000.0


def _candidate(source_ip="1.2.3.4", at=NOW):
    return AlertCandidate(AlertKind.PORT_SCAN, Severity.HIGH, "scan",
                          source_ip=source_ip, detected_at=at)


class TestInMemoryAlertStore:
    def setup_method(self):
        self.store = InMemoryAlertStore()

    def test_save_assigns_ids(self):
        a = self.store.save(_candidate())
        b = self.store.save(_candidate())
        assert a.alert_id != b.alert_id
        assert len(self.store) == 2

    def test_all_is_ordered_by_detection_time(self):
        late = self.store.save(_candidate(at=NOW + 10))
        early = self.store.save(_candidate(at=NOW))
        assert self.store.all() == [early, late]

    def test_resolve(self):
        record = self.store.save(_candidate())
        self.store.resolve(record.alert_id, "analyst")
        assert record.resolved and record.resolved_by == "analyst"
        assert self.store.unresolved() == []

    def test_resolve_unknown(self):
        with pytest.raises(KeyError):
            self.store.resolve("alert_missing", "analyst")


class TestRecentPacketBuffer:
    def test_query_window(self):
        buf = RecentPacketBuffer(max_age_seconds=600)
        for offset in (-500, -200, -10):
            buf.append(PacketRecord("a", "b", captured_at=NOW + offset))
        assert len(buf.query_recent_packets(300, now=NOW)) == 2

    def test_old_packets_evicted(self):
        buf = RecentPacketBuffer(max_age_seconds=60)
        buf.append(PacketRecord("a", "b", captured_at=NOW - 120))
        buf.append(PacketRecord("a", "b", captured_at=NOW))
        buf.query_recent_packets(30, now=NOW)
        assert len(buf) == 1

    def test_bounded_by_count(self):
        buf = RecentPacketBuffer(max_packets=3)
        for i in range(5):
            buf.append(PacketRecord("a", "b", captured_at=NOW + i))
        assert len(buf) == 3


class _FakeProducer:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    def produce(self, topic, key=None, value=None, on_delivery=None):
        if self.fail:
            raise BufferError("Local: Queue full")
        self.messages.append((topic, key, value))

    def poll(self, timeout):
        return 0


class TestKafkaAlertSink:
    def test_publishes_record_json(self):
        producer = _FakeProducer()
        record = KafkaAlertSink(producer, "alerts").save(_candidate())
        topic, key, value = producer.messages[0]
        assert topic == "alerts"
        assert key == b"1.2.3.4"
        body = json.loads(value)
        assert body["alert_id"] == record.alert_id
        assert body["kind"] == "PORT_SCAN"
        assert body["severity"] == "HIGH"

    def test_sourceless_alert_keyed_unknown(self):
        producer = _FakeProducer()
        KafkaAlertSink(producer, "alerts").save(_candidate(source_ip=None))
        assert producer.messages[0][1] == b"unknown"

    def test_buffer_error_becomes_persistence_error(self):
        sink = KafkaAlertSink(_FakeProducer(fail=True), "alerts")
        with pytest.raises(PersistenceError):
            sink.save(_candidate())
        assert sink.produced == 0
