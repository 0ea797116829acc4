"""Per-key trackers and the registry that owns them.

Three kinds of tracker, all keyed and created lazily by TrackerRegistry:

  ConnectionAttemptTracker  one per source IP: log of connection attempts
  PortScanTracker           one per source IP: ports / targets touched
  TrafficTracker            one per minute bucket: network-wide volume

Each tracker serializes its own mutations behind a lock.  Rule code goes
through the tracker's methods only; the registry's maps are never mutated
outside this module.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from typing import NamedTuple

import structlog

from netwatch.config import DEFAULT_COMMON_PORTS, DEFAULT_SENSITIVE_PORTS
from netwatch.models import PacketRecord, Protocol, ScanPattern
from netwatch.sliding_window import SlidingWindow

log = structlog.get_logger(__name__)

# A scan is SEQUENTIAL when neighbouring ports (sorted) are at most this far apart.
_SEQUENTIAL_MAX_GAP = 5
_COMMON_PORT_SHARE = 0.7
_MIN_PORTS_FOR_PATTERN = 3

_BUCKET_SECONDS = 60


def minute_bucket(timestamp: float) -> int:
    """Integer minute index used to key traffic buckets."""
    return int(timestamp // _BUCKET_SECONDS)


# ---------------------------------------------------------------------------
# Connection attempts
# ---------------------------------------------------------------------------

class ConnectionAttempt(NamedTuple):
    timestamp: float
    target_ip: str
    target_port: int | None
    protocol: Protocol


class ConnectionAttemptTracker:
    """Time-ordered log of connection attempts from one source IP.

    ``record_and_check`` is the detection entry point: it records, counts
    and clears-on-fire under one acquisition of the tracker lock, so two
    threads crossing the threshold together cannot wipe each other's
    attempts.
    """

    def __init__(self, retention_minutes: int = 60):
        self.retention_minutes = retention_minutes
        self._lock = threading.Lock()
        self._window = SlidingWindow(retention_minutes * 60)

    def record(self, packet: PacketRecord, now: float | None = None) -> bool:
        with self._lock:
            return self._record(packet, now)

    def record_and_check(self, packet: PacketRecord, threshold: int, minutes: float,
                         now: float | None = None) -> dict | None:
        """Record one attempt; if the trailing window reached ``threshold``,
        clear the log and return the evidence, else return None."""
        now = time.time() if now is None else now
        with self._lock:
            self._record(packet, now)
            attempts = self._window.count_since(now - minutes * 60, now)
            if attempts < threshold:
                return None
            to_port = (
                self._attempts_to_port(packet.dest_port, minutes, now)
                if packet.dest_port is not None else 0
            )
            self._window.clear(now)
        return {
            "attempts_in_window": attempts,
            "window_minutes": minutes,
            "attempts_to_target_port": to_port,
        }

    def attempts_in_last_minutes(self, minutes: float, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return self._window.count_since(now - minutes * 60, now)

    def attempts_to_port(self, port: int, minutes: float, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return self._attempts_to_port(port, minutes, now)

    @property
    def total_attempts(self) -> int:
        return len(self._window)

    @property
    def last_activity(self) -> float:
        return self._window.last_activity

    def reset(self, now: float | None = None) -> None:
        with self._lock:
            self._window.clear(now)

    def _record(self, packet: PacketRecord, now: float | None) -> bool:
        attempt = ConnectionAttempt(
            packet.captured_at, packet.dest_ip, packet.dest_port, packet.protocol,
        )
        accepted = self._window.add(packet.captured_at, attempt, now=now)
        if accepted:
            log.debug("connection_attempt_recorded", source_ip=packet.source_ip,
                      target=f"{packet.dest_ip}:{packet.dest_port}")
        return accepted

    def _attempts_to_port(self, port: int, minutes: float, now: float) -> int:
        cutoff = now - minutes * 60
        return sum(
            1 for a in self._window.items(now)
            if a.target_port == port and cutoff <= a.timestamp <= now
        )


# ---------------------------------------------------------------------------
# Port scans
# ---------------------------------------------------------------------------

class PortScanTracker:
    """Destination ports and target hosts touched by one source IP."""

    def __init__(self, retention_minutes: int = 30,
                 sensitive_ports: frozenset[int] = DEFAULT_SENSITIVE_PORTS,
                 common_ports: frozenset[int] = DEFAULT_COMMON_PORTS):
        self.retention_minutes = retention_minutes
        self.sensitive_ports = sensitive_ports
        self.common_ports = common_ports
        self._lock = threading.Lock()
        self._ports: dict[int, float] = {}
        self._targets: set[str] = set()
        self._suspicious: set[int] = set()
        self.last_activity = time.time()

    def record(self, port: int, target_ip: str, timestamp: float | None = None,
               now: float | None = None) -> None:
        now = time.time() if now is None else now
        timestamp = now if timestamp is None else timestamp
        with self._lock:
            self._record(port, target_ip, timestamp, now)

    def record_and_check(self, port: int | None, target_ip: str, threshold: int,
                         timestamp: float | None = None,
                         now: float | None = None) -> dict | None:
        """Record one port sighting (``port`` may be None); once ``threshold``
        distinct ports are live, reset and return the scan evidence."""
        now = time.time() if now is None else now
        timestamp = now if timestamp is None else timestamp
        with self._lock:
            if port is not None:
                self._record(port, target_ip, timestamp, now)
            if len(self._ports) < threshold:
                return None
            ports = sorted(self._ports)
            evidence = {
                "unique_ports": len(ports),
                "ports": ports,
                "targets": sorted(self._targets),
                "pattern": self._pattern(ports).value,
                "duration_minutes": self._duration_minutes(),
            }
            self._clear(now)
        return evidence

    def unique_port_count(self) -> int:
        with self._lock:
            return len(self._ports)

    def suspicious_port_count(self) -> int:
        with self._lock:
            return len(self._suspicious)

    def scanned_ports(self) -> set[int]:
        with self._lock:
            return set(self._ports)

    def suspicious_ports(self) -> set[int]:
        with self._lock:
            return set(self._suspicious)

    def target_ips(self) -> set[str]:
        with self._lock:
            return set(self._targets)

    def scan_duration_minutes(self) -> int:
        """Whole minutes between the oldest and newest port sighting."""
        with self._lock:
            return self._duration_minutes()

    def analyze_scan_pattern(self) -> ScanPattern:
        with self._lock:
            ports = sorted(self._ports)
        return self._pattern(ports)

    def reset(self, now: float | None = None) -> None:
        with self._lock:
            self._clear(time.time() if now is None else now)

    def _record(self, port: int, target_ip: str, timestamp: float, now: float) -> None:
        previous = self._ports.get(port)
        if previous is None or timestamp > previous:
            self._ports[port] = timestamp
        self._targets.add(target_ip)
        if port in self.sensitive_ports:
            self._suspicious.add(port)
        self.last_activity = now
        self._cleanup(now)

    def _pattern(self, ports: list[int]) -> ScanPattern:
        if len(ports) < _MIN_PORTS_FOR_PATTERN:
            return ScanPattern.INSUFFICIENT_DATA

        if all(b - a <= _SEQUENTIAL_MAX_GAP for a, b in zip(ports, ports[1:])):
            return ScanPattern.SEQUENTIAL

        common = sum(1 for p in ports if p in self.common_ports)
        if common >= len(ports) * _COMMON_PORT_SHARE:
            return ScanPattern.COMMON_PORTS

        return ScanPattern.RANDOM

    def _duration_minutes(self) -> int:
        if not self._ports:
            return 0
        stamps = self._ports.values()
        return int((max(stamps) - min(stamps)) // 60)

    def _clear(self, now: float) -> None:
        self._ports.clear()
        self._targets.clear()
        self._suspicious.clear()
        self.last_activity = now

    def _cleanup(self, now: float) -> None:
        cutoff = now - self.retention_minutes * 60
        stale = [p for p, ts in self._ports.items() if ts < cutoff]
        for p in stale:
            del self._ports[p]
        # Suspicious ports must stay a subset of the live port map.
        self._suspicious.intersection_update(self._ports)


# ---------------------------------------------------------------------------
# Traffic volume
# ---------------------------------------------------------------------------

class TrafficTracker:
    """Network-wide counters for one wall-clock minute."""

    # is_volume_anomalous() thresholds
    HIGH_PPS = 1000
    MANY_SOURCES = 100
    SHORT_AGE_SECONDS = 60
    PROTOCOL_CONCENTRATION_PCT = 80

    def __init__(self, bucket: int):
        self.bucket = bucket
        self.started_at = float(bucket * _BUCKET_SECONDS)
        self.ends_at = self.started_at + _BUCKET_SECONDS
        self._lock = threading.Lock()
        self._count = 0
        self._sources: set[str] = set()
        self._protocols: Counter = Counter()
        self._size_total = 0
        self._size_samples = 0
        self._size_max = 0
        self.last_activity = time.time()

    def record(self, packet: PacketRecord, now: float | None = None) -> int:
        """Count one packet; returns the bucket's packet count after the increment."""
        with self._lock:
            self._count += 1
            self._sources.add(packet.source_ip)
            self._protocols[packet.protocol.value] += 1
            if packet.size_bytes is not None:
                self._size_total += packet.size_bytes
                self._size_samples += 1
                self._size_max = max(self._size_max, packet.size_bytes)
            self.last_activity = time.time() if now is None else now
            return self._count

    @property
    def packet_count(self) -> int:
        with self._lock:
            return self._count

    def unique_source_count(self) -> int:
        with self._lock:
            return len(self._sources)

    def packets_per_second(self, now: float | None = None) -> float:
        now = time.time() if now is None else now
        elapsed = int(now - self.started_at)
        with self._lock:
            if elapsed <= 0:
                return 0.0
            return self._count / elapsed

    def protocol_distribution(self) -> dict[str, float]:
        """Share of packets per protocol, as percentages."""
        with self._lock:
            total = sum(self._protocols.values())
            if not total:
                return {}
            return {proto: n / total * 100 for proto, n in self._protocols.items()}

    def average_packet_size(self) -> float:
        with self._lock:
            if not self._size_samples:
                return 0.0
            return self._size_total / self._size_samples

    def is_volume_anomalous(self, now: float | None = None) -> bool:
        """True when at least two volume indicators hold at once."""
        now = time.time() if now is None else now
        pps = self.packets_per_second(now)
        sources = self.unique_source_count()
        distribution = self.protocol_distribution()

        factors = [
            pps > self.HIGH_PPS,
            sources > self.MANY_SOURCES,
            now - self.started_at < self.SHORT_AGE_SECONDS,
            any(share > self.PROTOCOL_CONCENTRATION_PCT for share in distribution.values()),
        ]
        suspicious = sum(factors) >= 2
        if suspicious:
            log.debug("traffic_volume_anomalous", bucket=self.bucket,
                      pps=round(pps, 1), sources=sources,
                      protocol_concentration=factors[3])
        return suspicious

    def summary(self, now: float | None = None) -> dict:
        with self._lock:
            max_size = self._size_max
            protocols = dict(self._protocols)
        return {
            "bucket": self.bucket,
            "packet_count": self.packet_count,
            "unique_sources": self.unique_source_count(),
            "packets_per_second": round(self.packets_per_second(now), 1),
            "average_packet_size": round(self.average_packet_size(), 1),
            "max_packet_size": max_size,
            "protocols": protocols,
        }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TrackerRegistry:
    """Owns the three tracker maps; one instance per engine.

    ``*_tracker(key)`` is get-or-create and atomic per key.  Eviction takes
    a snapshot of the map and removes entries one by one, so it can run
    while ingest threads are recording.

    Lookups that hit the lock-free fast path can hand a writer a tracker
    the sweeper is about to remove.  That writer records into the orphan
    and its event is lost; the next packet from the same key creates a
    fresh tracker.  Detection is at-most-once per event.
    """

    def __init__(self, config=None):
        self._config = config
        self._lock = threading.Lock()
        self._connections: dict[str, ConnectionAttemptTracker] = {}
        self._port_scans: dict[str, PortScanTracker] = {}
        self._traffic: dict[int, TrafficTracker] = {}

    # -- lookup ---------------------------------------------------------

    def connection_tracker(self, source_ip: str) -> ConnectionAttemptTracker:
        tracker = self._connections.get(source_ip)
        if tracker is None:
            with self._lock:
                tracker = self._connections.get(source_ip)
                if tracker is None:
                    tracker = ConnectionAttemptTracker(
                        self._setting("connection_retention_minutes", 60),
                    )
                    self._connections[source_ip] = tracker
        return tracker

    def port_scan_tracker(self, source_ip: str) -> PortScanTracker:
        tracker = self._port_scans.get(source_ip)
        if tracker is None:
            with self._lock:
                tracker = self._port_scans.get(source_ip)
                if tracker is None:
                    tracker = PortScanTracker(
                        self._setting("port_scan_retention_minutes", 30),
                        self._setting("sensitive_ports", DEFAULT_SENSITIVE_PORTS),
                        self._setting("common_ports", DEFAULT_COMMON_PORTS),
                    )
                    self._port_scans[source_ip] = tracker
        return tracker

    def traffic_tracker(self, bucket: int) -> TrafficTracker:
        tracker = self._traffic.get(bucket)
        if tracker is None:
            with self._lock:
                tracker = self._traffic.get(bucket)
                if tracker is None:
                    tracker = TrafficTracker(bucket)
                    self._traffic[bucket] = tracker
        return tracker

    def find_connection_tracker(self, source_ip: str) -> ConnectionAttemptTracker | None:
        return self._connections.get(source_ip)

    def find_port_scan_tracker(self, source_ip: str) -> PortScanTracker | None:
        return self._port_scans.get(source_ip)

    def find_traffic_tracker(self, bucket: int) -> TrafficTracker | None:
        return self._traffic.get(bucket)

    # -- eviction -------------------------------------------------------

    def evict_connections(self, older_than: float) -> int:
        return self._evict(self._connections, lambda t: t.last_activity < older_than)

    def evict_port_scans(self, older_than: float) -> int:
        return self._evict(self._port_scans, lambda t: t.last_activity < older_than)

    def evict_traffic(self, older_than: float) -> int:
        return self._evict(self._traffic, lambda t: t.ends_at < older_than)

    def _evict(self, table: dict, is_stale) -> int:
        removed = 0
        for key, tracker in list(table.items()):
            if not is_stale(tracker):
                continue
            with self._lock:
                # Re-check under the lock: a writer may have touched it since the snapshot.
                if table.get(key) is tracker and is_stale(tracker):
                    del table[key]
                    removed += 1
        return removed

    # -- introspection --------------------------------------------------

    def counts(self) -> dict[str, int]:
        return {
            "connection_trackers": len(self._connections),
            "port_scan_trackers": len(self._port_scans),
            "traffic_trackers": len(self._traffic),
        }

    def _setting(self, name: str, default):
        if self._config is None:
            return default
        return getattr(self._config, name)
