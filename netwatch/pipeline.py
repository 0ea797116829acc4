"""Alert pipeline: validate, deduplicate, persist, notify.

    candidate ──validate──> rejected (warning)
              ──dedup─────> suppressed (debug)
              ──persist───> failed (error, no retry)
              ──notify────> done

Delivery is best-effort and at-most-once: a candidate that fails at any
stage is logged and dropped.  ``process()`` never raises.

AlertDispatcher puts a bounded queue and a worker thread in front of the
pipeline so a slow store or notifier cannot stall packet ingestion.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field

import structlog

from netwatch import metrics
from netwatch.models import AlertCandidate, AlertKind, AlertRecord, Severity
from netwatch.notify import tier_for

log = structlog.get_logger(__name__)

MAX_DESCRIPTION_LENGTH = 1000


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validation_error(candidate: AlertCandidate,
                     max_length: int = MAX_DESCRIPTION_LENGTH) -> str | None:
    """Return why a candidate is invalid, or None if it is fine.  Pure."""
    kind = candidate.kind
    if kind is None or (isinstance(kind, str) and not kind.strip()):
        return "missing alert kind"
    if not isinstance(candidate.severity, Severity):
        return "severity not set"
    description = candidate.description
    if description is None or not str(description).strip():
        return "missing description"
    if len(description) > max_length:
        return f"description too long: {len(description)} characters"
    return None


def is_valid_alert(candidate: AlertCandidate,
                   max_length: int = MAX_DESCRIPTION_LENGTH) -> bool:
    return validation_error(candidate, max_length) is None


# ---------------------------------------------------------------------------
# Dedup cache
# ---------------------------------------------------------------------------

class DedupCache:
    """(source identity, kind) -> last emitted timestamp.

    ``reserve()`` is a single check-and-set under the lock, so two threads
    racing the same key cannot both get through the cooldown.  Entries older
    than the cooldown are treated as absent and evicted lazily or by the
    sweeper.
    """

    def __init__(self, cooldown_seconds: float | None = None, config=None):
        self._cooldown = cooldown_seconds
        self._config = config
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], float] = {}

    @property
    def cooldown_seconds(self) -> float:
        if self._cooldown is not None:
            return self._cooldown
        if self._config is not None:
            return self._config.dedup_cooldown_minutes * 60
        return 300

    def is_duplicate(self, key: tuple[str, str], now: float) -> bool:
        with self._lock:
            last = self._entries.get(key)
            return last is not None and last > now - self.cooldown_seconds

    def reserve(self, key: tuple[str, str], now: float) -> tuple[bool, float | None]:
        """Claim the key at ``now``.  Returns (claimed, previous timestamp)."""
        with self._lock:
            last = self._entries.get(key)
            if last is not None and last > now - self.cooldown_seconds:
                return False, last
            self._entries[key] = now
            return True, last

    def release(self, key: tuple[str, str], claimed_at: float,
                previous: float | None) -> None:
        """Undo a reservation whose alert was never persisted."""
        with self._lock:
            if self._entries.get(key) != claimed_at:
                return
            if previous is None:
                del self._entries[key]
            else:
                self._entries[key] = previous

    def evict_expired(self, now: float) -> int:
        cutoff = now - self.cooldown_seconds
        removed = 0
        for key, ts in list(self._entries.items()):
            if ts > cutoff:
                continue
            with self._lock:
                if key in self._entries and self._entries[key] <= cutoff:
                    del self._entries[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

@dataclass
class AlertStatistics:
    created: int = 0
    suppressed: int = 0
    rejected: int = 0
    failed: int = 0
    critical_today: int = 0
    by_kind: dict = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_created(self, record: AlertRecord) -> None:
        with self._lock:
            self.created += 1
            kind = record.kind.value
            self.by_kind[kind] = self.by_kind.get(kind, 0) + 1
            if record.severity is Severity.CRITICAL:
                self.critical_today += 1

    def increment(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def reset_critical_today(self) -> None:
        with self._lock:
            self.critical_today = 0

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "created": self.created,
                "suppressed": self.suppressed,
                "rejected": self.rejected,
                "failed": self.failed,
                "critical_today": self.critical_today,
                "by_kind": dict(self.by_kind),
            }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class AlertPipeline:

    def __init__(self, store, notifier=None, config=None,
                 dedup: DedupCache | None = None):
        self.store = store
        self.notifier = notifier
        self.config = config
        self.dedup = dedup or DedupCache(config=config)
        self.stats = AlertStatistics()

    def process(self, candidate: AlertCandidate,
                now: float | None = None) -> AlertRecord | None:
        """Run one candidate through the pipeline.  Returns the stored record, if any."""
        try:
            return self._process(candidate, time.time() if now is None else now)
        except Exception:
            log.exception("alert_pipeline_error", kind=_kind_name(candidate))
            self.stats.increment("failed")
            metrics.alerts_failed.labels(stage="pipeline").inc()
            return None

    __call__ = process

    def _process(self, candidate: AlertCandidate, now: float) -> AlertRecord | None:
        # 1. Validate
        reason = validation_error(candidate, self._max_description_length())
        if reason is not None:
            log.warning("alert_rejected", reason=reason, kind=_kind_name(candidate),
                        source_ip=candidate.source_ip)
            self.stats.increment("rejected")
            metrics.alerts_rejected.inc()
            return None

        # 2. Deduplicate
        key = candidate.dedup_key
        claimed, previous = self.dedup.reserve(key, now)
        if not claimed:
            log.debug("alert_suppressed", key=f"{key[0]}:{key[1]}", last_emitted=previous)
            self.stats.increment("suppressed")
            metrics.alerts_suppressed.labels(kind=key[1]).inc()
            return None

        # 3. Persist
        try:
            record = self.store.save(candidate)
        except Exception:
            log.exception("alert_persist_failed", kind=key[1], source_ip=candidate.source_ip)
            record = None
        if record is None:
            self.dedup.release(key, now, previous)
            self.stats.increment("failed")
            metrics.alerts_failed.labels(stage="persist").inc()
            return None

        self.stats.record_created(record)
        metrics.alerts_persisted.labels(
            kind=record.kind.value, severity=record.severity.name,
        ).inc()
        metrics.dedup_entries.set(len(self.dedup))

        # 4. Notify
        if self.notifier is not None:
            try:
                self.notifier.notify(record, tier_for(record.severity))
            except Exception:
                log.exception("alert_notify_failed", alert_id=record.alert_id)
                metrics.alerts_failed.labels(stage="notify").inc()

        log.info("alert_created", alert_id=record.alert_id, kind=record.kind.value,
                 severity=record.severity.name, source_ip=record.source_ip)
        return record

    def _max_description_length(self) -> int:
        if self.config is None:
            return MAX_DESCRIPTION_LENGTH
        return self.config.max_description_length


def _kind_name(candidate) -> str:
    kind = getattr(candidate, "kind", None)
    return kind.value if isinstance(kind, AlertKind) else str(kind)


# ---------------------------------------------------------------------------
# Async dispatch
# ---------------------------------------------------------------------------

_STOP = object()


class AlertDispatcher:
    """Bounded queue + worker thread feeding an AlertPipeline.

    ``submit()`` never blocks: when the queue is full the candidate is
    dropped with a warning.  ``close()`` drains what is already queued.
    """

    def __init__(self, pipeline: AlertPipeline, maxsize: int = 10_000):
        self.pipeline = pipeline
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(
            target=self._run, name="alert-dispatcher", daemon=True,
        )
        self._started = False

    def start(self) -> "AlertDispatcher":
        if not self._started:
            self._thread.start()
            self._started = True
        return self

    def submit(self, candidate: AlertCandidate) -> bool:
        try:
            self._queue.put_nowait(candidate)
        except queue.Full:
            log.warning("alert_dispatch_dropped", kind=_kind_name(candidate),
                        source_ip=candidate.source_ip)
            metrics.dispatch_dropped.inc()
            return False
        return True

    __call__ = submit

    def close(self, timeout: float | None = None) -> None:
        if not self._started:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)

    def pending(self) -> int:
        return self._queue.qsize()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.pipeline.process(item)
            finally:
                self._queue.task_done()
