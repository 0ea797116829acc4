"""Prometheus metrics for the detection service.

Every Counter/Histogram/Gauge below registers itself in the default
REGISTRY on import.  The engine and pipeline update them inline;
``start_metrics_server()`` serves /metrics from a daemon thread.
"""

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------
packets_ingested = Counter(
    "netwatch_packets_ingested_total",
    "Packets evaluated by the detection engine",
    ["protocol"],
)
packets_malformed = Counter(
    "netwatch_packets_malformed_total",
    "Wire records skipped because they could not be decoded",
)
packets_dropped = Counter(
    "netwatch_packets_dropped_total",
    "Packets dropped because the ingest channel was full",
)
rule_errors = Counter(
    "netwatch_rule_errors_total",
    "Exceptions raised inside a rule (treated as no candidate)",
    ["rule_id"],
)
ingest_latency = Histogram(
    "netwatch_ingest_seconds",
    "Time spent evaluating all rules for one packet",
    buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1],
)

# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------
candidates_total = Counter(
    "netwatch_alert_candidates_total",
    "Candidate alerts produced by rules and batch analysis",
    ["kind"],
)
alerts_persisted = Counter(
    "netwatch_alerts_total",
    "Alerts that passed validation and dedup and were persisted",
    ["kind", "severity"],
)
alerts_suppressed = Counter(
    "netwatch_alerts_suppressed_total",
    "Candidates suppressed by the dedup cooldown",
    ["kind"],
)
alerts_rejected = Counter(
    "netwatch_alerts_rejected_total",
    "Candidates dropped by validation",
)
alerts_failed = Counter(
    "netwatch_alerts_failed_total",
    "Candidates dropped because a collaborator failed",
    ["stage"],
)
dispatch_dropped = Counter(
    "netwatch_dispatch_dropped_total",
    "Candidates dropped because the alert dispatcher queue was full",
)

# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------
active_trackers = Gauge(
    "netwatch_active_trackers",
    "Live tracker entries per map",
    ["tracker"],
)
dedup_entries = Gauge(
    "netwatch_dedup_cache_entries",
    "Entries in the alert dedup cache",
)
evictions_total = Counter(
    "netwatch_evictions_total",
    "Entries removed by the eviction sweeper",
    ["tracker"],
)


def start_metrics_server(port: int) -> None:
    start_http_server(port)
