"""Detection engine: evaluates packets against all rules.

Pure business logic, no Kafka dependency.  The service feeds packets in and
hands the resulting candidates to an alert sink (normally an AlertDispatcher
in front of the AlertPipeline).

State: a TrackerRegistry owned by the engine:
    connection trackers  dict[source_ip, ConnectionAttemptTracker]
    port-scan trackers   dict[source_ip, PortScanTracker]
    traffic trackers     dict[minute_bucket, TrafficTracker]
"""

from __future__ import annotations

import time

import structlog

from netwatch import metrics
from netwatch.batch_analysis import analyze_batch
from netwatch.config import DetectionConfig
from netwatch.errors import MalformedPacket
from netwatch.models import AlertCandidate, PacketRecord
from netwatch.rules import ALL_RULES, Rule
from netwatch.trackers import TrackerRegistry

log = structlog.get_logger(__name__)


class DetectionEngine:

    def __init__(self, config: DetectionConfig | None = None,
                 rules: list[Rule] | None = None,
                 alert_sink=None,
                 packet_source=None,
                 registry: TrackerRegistry | None = None):
        self.config = config or DetectionConfig()
        self.rules = rules if rules is not None else ALL_RULES
        self.registry = registry or TrackerRegistry(self.config)
        # alert_sink: callable(AlertCandidate); packet_source: .query_recent_packets()
        self.alert_sink = alert_sink
        self.packet_source = packet_source

    # ------------------------------------------------------------------
    # Per-packet path
    # ------------------------------------------------------------------

    def evaluate(self, packet: PacketRecord, now: float | None = None) -> list[AlertCandidate]:
        """Run every rule against one packet and return the candidates.

        Rules run in ALL_RULES order and all of them run, so one packet can
        produce several candidates.  A rule that raises is logged and
        counts as "no candidate"; the remaining rules still run.
        """
        now = time.time() if now is None else now
        candidates = []
        for rule in self.rules:
            try:
                candidate = rule.evaluate(packet, self.registry, self.config, now)
            except Exception:
                log.exception("rule_failed", rule_id=rule.id, source_ip=packet.source_ip)
                metrics.rule_errors.labels(rule_id=rule.id).inc()
                continue
            if candidate is not None:
                log.debug("rule_fired", rule_id=rule.id, kind=candidate.kind.value,
                          source_ip=candidate.source_ip)
                metrics.candidates_total.labels(kind=candidate.kind.value).inc()
                candidates.append(candidate)
        return candidates

    def ingest(self, packet: PacketRecord, now: float | None = None) -> list[AlertCandidate]:
        """Evaluate one packet and forward its candidates.  Never raises."""
        if not self.config.enable_auto_detection:
            return []

        try:
            if not packet.source_ip or not packet.dest_ip:
                log.debug("packet_skipped", reason="missing address")
                return []

            started = time.perf_counter()
            candidates = self.evaluate(packet, now)
            elapsed = time.perf_counter() - started
        except Exception:
            log.exception("ingest_failed")
            return []

        self._forward(candidates)
        try:
            metrics.ingest_latency.observe(elapsed)
            metrics.packets_ingested.labels(protocol=packet.protocol.value).inc()
        except Exception:
            log.exception("ingest_metrics_failed")
        return candidates

    def decode(self, data) -> PacketRecord | None:
        """Wire record to PacketRecord, or None (debug log) if it is malformed."""
        try:
            return PacketRecord.from_dict(data)
        except MalformedPacket as e:
            log.debug("packet_malformed", error=str(e))
            metrics.packets_malformed.inc()
            return None

    def ingest_raw(self, data: dict, now: float | None = None) -> list[AlertCandidate]:
        """Decode a wire record and ingest it; malformed records are skipped."""
        if not self.config.enable_auto_detection:
            return []
        packet = self.decode(data)
        if packet is None:
            return []
        return self.ingest(packet, now)

    __call__ = ingest

    # ------------------------------------------------------------------
    # Periodic path
    # ------------------------------------------------------------------

    def periodic_analysis(self, now: float | None = None) -> list[AlertCandidate]:
        """Batch heuristics over the last few minutes of packets."""
        if not self.config.enable_auto_detection:
            return []
        if self.packet_source is None:
            log.debug("periodic_analysis_skipped", reason="no packet source")
            return []

        now = time.time() if now is None else now
        window = self.config.analysis_window_minutes * 60
        try:
            packets = self.packet_source.query_recent_packets(window, now=now)
            log.info("periodic_analysis_started", packets=len(packets),
                     window_minutes=self.config.analysis_window_minutes)
            candidates = analyze_batch(packets, self.config, now)
        except Exception:
            log.exception("periodic_analysis_failed")
            return []

        for c in candidates:
            log.warning("batch_heuristic_tripped", kind=c.kind.value,
                        heuristic=c.evidence.get("heuristic"), source_ip=c.source_ip)
            metrics.candidates_total.labels(kind=c.kind.value).inc()
        self._forward(candidates)
        log.info("periodic_analysis_completed", candidates=len(candidates))
        return candidates

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict:
        counts = self.registry.counts()
        return {
            "auto_detection_enabled": self.config.enable_auto_detection,
            "active_connection_trackers": counts["connection_trackers"],
            "active_port_scan_trackers": counts["port_scan_trackers"],
            "active_traffic_trackers": counts["traffic_trackers"],
            "rules": [r.id for r in self.rules],
            "config": self.config.to_dict(),
        }

    def _forward(self, candidates: list[AlertCandidate]) -> None:
        if self.alert_sink is None:
            return
        for c in candidates:
            try:
                self.alert_sink(c)
            except Exception:
                log.exception("alert_forward_failed", kind=c.kind.value)
