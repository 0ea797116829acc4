"""Persistence-side collaborators.

The engine only needs two things from storage: somewhere to save an alert,
and the packets seen in the last few minutes for batch analysis.  These are
the in-process implementations; the Kafka alert sink lives with the service
entry point in ``netwatch.main``.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from typing import Protocol

from netwatch.models import AlertCandidate, AlertRecord, PacketRecord


class AlertStore(Protocol):
    def save(self, candidate: AlertCandidate) -> AlertRecord | None:
        """Persist a candidate.  None (or an exception) means it was not stored."""


class RecentPacketSource(Protocol):
    def query_recent_packets(self, window_seconds: float,
                             now: float | None = None) -> list[PacketRecord]:
        ...


def new_alert_id() -> str:
    return f"alert_{uuid.uuid4().hex[:12]}"


class InMemoryAlertStore:
    """Dict-backed store; also owns the resolution state of its records."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, AlertRecord] = {}

    def save(self, candidate: AlertCandidate) -> AlertRecord:
        record = AlertRecord(alert_id=new_alert_id(), candidate=candidate)
        with self._lock:
            self._records[record.alert_id] = record
        return record

    def get(self, alert_id: str) -> AlertRecord | None:
        with self._lock:
            return self._records.get(alert_id)

    def all(self) -> list[AlertRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.candidate.detected_at)

    def unresolved(self) -> list[AlertRecord]:
        return [r for r in self.all() if not r.resolved]

    def resolve(self, alert_id: str, resolved_by: str) -> AlertRecord:
        with self._lock:
            record = self._records.get(alert_id)
            if record is None:
                raise KeyError(alert_id)
            record.mark_resolved(resolved_by)
            return record

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class RecentPacketBuffer:
    """Time-bounded ring of recently ingested packets for batch analysis."""

    def __init__(self, max_age_seconds: float = 600, max_packets: int = 200_000):
        self.max_age = max_age_seconds
        self._lock = threading.Lock()
        self._buf: deque[PacketRecord] = deque(maxlen=max_packets)

    def append(self, packet: PacketRecord) -> None:
        with self._lock:
            self._buf.append(packet)

    def query_recent_packets(self, window_seconds: float,
                             now: float | None = None) -> list[PacketRecord]:
        now = time.time() if now is None else now
        cutoff = now - window_seconds
        with self._lock:
            self._evict(now)
            return [p for p in self._buf if cutoff <= p.captured_at <= now]

    def _evict(self, now: float) -> None:
        cutoff = now - self.max_age
        while self._buf and self._buf[0].captured_at < cutoff:
            self._buf.popleft()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buf)
