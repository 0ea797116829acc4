"""Eviction sweeper: bounds memory by dropping idle trackers and stale dedup entries."""

from __future__ import annotations

import time
from dataclasses import dataclass

import structlog

from netwatch import metrics

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SweepReport:
    connection_trackers: int = 0
    port_scan_trackers: int = 0
    traffic_trackers: int = 0
    dedup_entries: int = 0

    @property
    def total(self) -> int:
        return (self.connection_trackers + self.port_scan_trackers
                + self.traffic_trackers + self.dedup_entries)


class EvictionSweeper:
    """One pass over every tracker map plus the dedup cache.

    Horizons are read from the config on every pass.  A failing pass is
    logged and reported as None; the next tick tries again.
    """

    def __init__(self, registry, dedup, config):
        self.registry = registry
        self.dedup = dedup
        self.config = config

    def sweep(self, now: float | None = None) -> SweepReport | None:
        now = time.time() if now is None else now
        try:
            report = SweepReport(
                connection_trackers=self.registry.evict_connections(
                    now - self.config.connection_retention_minutes * 60),
                port_scan_trackers=self.registry.evict_port_scans(
                    now - self.config.port_scan_retention_minutes * 60),
                traffic_trackers=self.registry.evict_traffic(
                    now - self.config.traffic_retention_minutes * 60),
                dedup_entries=self.dedup.evict_expired(now),
            )
        except Exception:
            log.exception("sweep_failed")
            return None

        metrics.evictions_total.labels(tracker="connection").inc(report.connection_trackers)
        metrics.evictions_total.labels(tracker="port_scan").inc(report.port_scan_trackers)
        metrics.evictions_total.labels(tracker="traffic").inc(report.traffic_trackers)
        metrics.evictions_total.labels(tracker="dedup").inc(report.dedup_entries)
        for name, count in self.registry.counts().items():
            metrics.active_trackers.labels(tracker=name).set(count)
        metrics.dedup_entries.set(len(self.dedup))

        if report.total:
            log.info("sweep_completed", **vars(report))
        else:
            log.debug("sweep_completed", removed=0)
        return report

    __call__ = sweep
