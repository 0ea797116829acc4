"""Sliding window for per-key event accumulation.

Deque-based: O(1) append, amortized O(1) eviction from the left.  Every
public method takes the window's lock, so one window can be shared by
several ingest threads; callers never touch the deque directly.
"""

import threading
import time
from collections import deque

# Events with timestamps more than this many seconds in the future are
# dropped so a bogus capture clock cannot poison the window.
MAX_DRIFT_SECONDS = 5


class SlidingWindow:
    __slots__ = ("max_age", "_buf", "_lock", "last_activity")

    def __init__(self, max_age_seconds: float):
        self.max_age = max_age_seconds
        self._buf: deque = deque()
        self._lock = threading.Lock()
        self.last_activity = time.time()

    def add(self, timestamp: float, item=None, now: float | None = None) -> bool:
        """Append item. Returns False (and drops) if timestamp is bogus or already expired."""
        now = time.time() if now is None else now
        with self._lock:
            if timestamp > now + MAX_DRIFT_SECONDS:
                return False  # too far in the future
            if timestamp < now - self.max_age:
                return False  # already outside the retention horizon
            self._evict(now)
            if self._buf and timestamp < self._buf[-1][0]:
                # Late arrival: keep the deque ordered so left eviction stays valid.
                self._insert_ordered(timestamp, item)
            else:
                self._buf.append((timestamp, item))
            self.last_activity = now
            return True

    def count_since(self, cutoff: float, now: float | None = None) -> int:
        """Number of events with cutoff <= timestamp <= now."""
        now = time.time() if now is None else now
        with self._lock:
            self._evict(now)
            return sum(1 for ts, _ in self._buf if cutoff <= ts <= now)

    def items(self, now: float | None = None) -> list:
        """Return all items currently inside the window, oldest first."""
        now = time.time() if now is None else now
        with self._lock:
            self._evict(now)
            return [item for _, item in self._buf]

    def clear(self, now: float | None = None) -> None:
        """Reset after an alert fires."""
        with self._lock:
            self._buf.clear()
            self.last_activity = time.time() if now is None else now

    def _evict(self, now: float) -> None:
        cutoff = now - self.max_age
        while self._buf and self._buf[0][0] < cutoff:
            self._buf.popleft()

    def _insert_ordered(self, timestamp: float, item) -> None:
        # Out-of-order events are rare and usually near the tail.
        idx = len(self._buf)
        while idx > 0 and self._buf[idx - 1][0] > timestamp:
            idx -= 1
        self._buf.insert(idx, (timestamp, item))

    def __len__(self) -> int:
        with self._lock:
            return len(self._buf)
