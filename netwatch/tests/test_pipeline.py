"""Tests for the alert pipeline: validation, dedup, persistence, notification."""

import io
import threading

import pytest
from structlog.testing import capture_logs

from netwatch.config import DetectionConfig
from netwatch.errors import PersistenceError
from netwatch.models import AlertCandidate, AlertKind, Severity
from netwatch.notify import ConsoleNotifier, NotificationTier, tier_for
from netwatch.pipeline import (
    AlertDispatcher,
    AlertPipeline,
    DedupCache,
    is_valid_alert,
    validation_error,
)
from netwatch.sinks import InMemoryAlertStore

NOW = 1_700_000_000.0


def _candidate(kind=AlertKind.PORT_SCAN, severity=Severity.HIGH,
               description="Port scan detected", source_ip="203.0.113.50"):
    return AlertCandidate(kind=kind, severity=severity, description=description,
                          source_ip=source_ip, detected_at=NOW)


class _RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, record, tier):
        self.calls.append((record, tier))


class _FailingStore:
    def __init__(self, exc=None):
        self.exc = exc

    def save(self, candidate):
        if self.exc is not None:
            raise self.exc
        return None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_valid(self):
        assert validation_error(_candidate()) is None

    def test_missing_kind(self):
        assert validation_error(_candidate(kind=None)) == "missing alert kind"

    def test_missing_severity(self):
        assert validation_error(_candidate(severity=None)) == "severity not set"

    @pytest.mark.parametrize("description", ["", "   ", None])
    def test_blank_description(self, description):
        assert not is_valid_alert(_candidate(description=description))

    def test_description_length_boundary(self):
        assert is_valid_alert(_candidate(description="x" * 1000))
        assert not is_valid_alert(_candidate(description="x" * 1001))

    def test_validation_is_idempotent(self):
        c = _candidate(description="x" * 1001)
        assert validation_error(c) == validation_error(c)
        assert is_valid_alert(_candidate()) == is_valid_alert(_candidate())


# ---------------------------------------------------------------------------
# DedupCache
# ---------------------------------------------------------------------------

class TestDedupCache:
    def setup_method(self):
        self.cache = DedupCache(cooldown_seconds=300)
        self.key = ("1.2.3.4", "PORT_SCAN")

    def test_first_reservation_claims(self):
        assert self.cache.reserve(self.key, NOW) == (True, None)
        assert self.cache.is_duplicate(self.key, NOW + 1)

    def test_second_inside_cooldown_rejected(self):
        self.cache.reserve(self.key, NOW)
        assert self.cache.reserve(self.key, NOW + 299) == (False, NOW)

    def test_reservation_after_cooldown_claims(self):
        self.cache.reserve(self.key, NOW)
        assert self.cache.reserve(self.key, NOW + 300) == (True, NOW)

    def test_release_restores_previous(self):
        self.cache.reserve(self.key, NOW)
        self.cache.reserve(self.key, NOW + 400)
        self.cache.release(self.key, NOW + 400, NOW)
        assert self.cache.reserve(self.key, NOW + 401) == (True, NOW)

    def test_release_of_new_key_removes_it(self):
        self.cache.reserve(self.key, NOW)
        self.cache.release(self.key, NOW, None)
        assert len(self.cache) == 0

    def test_evict_expired(self):
        self.cache.reserve(("a", "X"), NOW - 600)
        self.cache.reserve(("b", "X"), NOW - 10)
        assert self.cache.evict_expired(NOW) == 1
        assert len(self.cache) == 1

    def test_cooldown_from_config(self):
        cache = DedupCache(config=DetectionConfig(dedup_cooldown_minutes=2))
        assert cache.cooldown_seconds == 120


# ---------------------------------------------------------------------------
# AlertPipeline
# ---------------------------------------------------------------------------

class TestAlertPipeline:
    def setup_method(self):
        self.store = InMemoryAlertStore()
        self.notifier = _RecordingNotifier()
        self.pipeline = AlertPipeline(self.store, self.notifier, config=DetectionConfig())

    def test_valid_candidate_is_persisted_and_notified(self):
        record = self.pipeline.process(_candidate(), now=NOW)
        assert record is not None
        assert record.alert_id.startswith("alert_")
        assert self.store.get(record.alert_id) is record
        assert self.notifier.calls == [(record, NotificationTier.STANDARD)]

    def test_invalid_candidate_rejected_with_warning(self):
        with capture_logs() as logs:
            assert self.pipeline.process(_candidate(description=""), now=NOW) is None
        assert logs[0]["event"] == "alert_rejected"
        assert logs[0]["log_level"] == "warning"
        assert len(self.store) == 0
        assert self.pipeline.stats.rejected == 1

    def test_duplicates_inside_cooldown_collapse(self):
        first = self.pipeline.process(_candidate(), now=NOW)
        second = self.pipeline.process(_candidate(), now=NOW + 60)
        assert first is not None and second is None
        assert len(self.store) == 1
        assert self.pipeline.stats.suppressed == 1

        third = self.pipeline.process(_candidate(), now=NOW + 301)
        assert third is not None
        assert len(self.store) == 2

    def test_dedup_key_includes_kind_and_source(self):
        self.pipeline.process(_candidate(), now=NOW)
        assert self.pipeline.process(_candidate(kind=AlertKind.LARGE_PACKET), now=NOW)
        assert self.pipeline.process(_candidate(source_ip="198.51.100.1"), now=NOW)
        assert len(self.store) == 3

    def test_sourceless_alerts_share_unknown_key(self):
        self.pipeline.process(_candidate(kind=AlertKind.TRAFFIC_SPIKE, source_ip=None), now=NOW)
        assert self.pipeline.process(
            _candidate(kind=AlertKind.TRAFFIC_SPIKE, source_ip=None), now=NOW + 1) is None

    @pytest.mark.parametrize("store", [_FailingStore(), _FailingStore(PersistenceError("down"))])
    def test_persistence_failure_rolls_back_dedup(self, store):
        pipeline = AlertPipeline(store, self.notifier)
        with capture_logs():
            assert pipeline.process(_candidate(), now=NOW) is None
        assert pipeline.stats.failed == 1
        assert len(pipeline.dedup) == 0
        assert self.notifier.calls == []

        # A retry inside the cooldown still gets through once storage recovers.
        pipeline.store = self.store
        assert pipeline.process(_candidate(), now=NOW + 1) is not None

    def test_notifier_failure_keeps_record(self):
        class Broken:
            def notify(self, record, tier):
                raise RuntimeError("smtp down")

        pipeline = AlertPipeline(self.store, Broken())
        with capture_logs() as logs:
            record = pipeline.process(_candidate(), now=NOW)
        assert record is not None
        assert len(self.store) == 1
        assert any(e["event"] == "alert_notify_failed" for e in logs)

    def test_statistics(self):
        self.pipeline.process(_candidate(kind=AlertKind.TRAFFIC_SPIKE,
                                         severity=Severity.CRITICAL), now=NOW)
        self.pipeline.process(_candidate(), now=NOW)
        snap = self.pipeline.stats.snapshot()
        assert snap["created"] == 2
        assert snap["critical_today"] == 1
        assert snap["by_kind"] == {"TRAFFIC_SPIKE": 1, "PORT_SCAN": 1}
        self.pipeline.stats.reset_critical_today()
        assert self.pipeline.stats.critical_today == 0


# ---------------------------------------------------------------------------
# Notification tiers
# ---------------------------------------------------------------------------

class TestNotification:
    @pytest.mark.parametrize("severity, tier", [
        (Severity.CRITICAL, NotificationTier.IMMEDIATE),
        (Severity.HIGH, NotificationTier.STANDARD),
        (Severity.MEDIUM, NotificationTier.PASSIVE),
        (Severity.LOW, NotificationTier.DEBUG),
    ])
    def test_tier_table(self, severity, tier):
        assert tier_for(severity) is tier

    def test_console_notifier_banner_for_critical(self):
        out = io.StringIO()
        store = InMemoryAlertStore()
        record = store.save(_candidate(kind=AlertKind.TRAFFIC_SPIKE, severity=Severity.CRITICAL))
        with capture_logs() as logs:
            ConsoleNotifier(out).notify(record, NotificationTier.IMMEDIATE)
        assert "CRITICAL" in out.getvalue()
        assert logs[0]["event"] == "alert_critical"

    def test_console_notifier_passive_is_log_only(self):
        out = io.StringIO()
        record = InMemoryAlertStore().save(_candidate(severity=Severity.MEDIUM))
        with capture_logs() as logs:
            ConsoleNotifier(out).notify(record, NotificationTier.PASSIVE)
        assert out.getvalue() == ""
        assert logs[0]["event"] == "alert_medium"

    def test_standard_line_shows_kind_label(self):
        out = io.StringIO()
        record = InMemoryAlertStore().save(_candidate())
        with capture_logs():
            ConsoleNotifier(out).notify(record, NotificationTier.STANDARD)
        assert out.getvalue().startswith("[HIGH] Port scan")


class TestConcurrentProcess:
    THREADS = 16
    PER_THREAD = 200

    def setup_method(self):
        self.store = InMemoryAlertStore()
        self.pipeline = AlertPipeline(self.store)

    def test_identical_candidates_from_many_threads_store_once(self):
        barrier = threading.Barrier(self.THREADS)

        def worker():
            barrier.wait()
            for _ in range(self.PER_THREAD):
                self.pipeline.process(_candidate(), now=NOW)

        threads = [threading.Thread(target=worker) for _ in range(self.THREADS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(self.store) == 1
        snap = self.pipeline.stats.snapshot()
        assert snap["created"] == 1
        assert snap["suppressed"] == self.THREADS * self.PER_THREAD - 1


# ---------------------------------------------------------------------------
# AlertDispatcher
# ---------------------------------------------------------------------------

class TestAlertDispatcher:
    def test_drains_on_close(self):
        store = InMemoryAlertStore()
        dispatcher = AlertDispatcher(AlertPipeline(store)).start()
        for i in range(5):
            assert dispatcher.submit(_candidate(source_ip=f"10.0.0.{i}"))
        dispatcher.close(timeout=5)
        assert len(store) == 5

    def test_full_queue_drops(self):
        dispatcher = AlertDispatcher(AlertPipeline(InMemoryAlertStore()), maxsize=1)
        with capture_logs() as logs:
            assert dispatcher.submit(_candidate()) is True
            assert dispatcher.submit(_candidate()) is False
        assert logs[0]["event"] == "alert_dispatch_dropped"
        assert dispatcher.pending() == 1
