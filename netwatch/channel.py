"""Bounded packet channel between the capture side and the engine.

The capture thread calls ``offer()``; a small pool of worker threads pulls
packets off and calls ``engine.ingest()``.  A full channel makes ``offer()``
wait at most ``timeout`` seconds and then report the drop, so a stalled
engine applies backpressure without wedging the capture loop forever.
"""

import queue
import threading

import structlog

from netwatch import metrics

log = structlog.get_logger(__name__)

_CLOSE = object()


class PacketChannel:

    def __init__(self, handler, maxsize: int = 10_000, workers: int = 2):
        self._handler = handler
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._workers = [
            threading.Thread(target=self._run, name=f"ingest-{i}", daemon=True)
            for i in range(workers)
        ]
        self._closed = threading.Event()
        self._started = False
        self.dropped = 0

    def start(self) -> "PacketChannel":
        for t in self._workers:
            t.start()
        self._started = True
        return self

    def offer(self, packet, timeout: float = 1.0) -> bool:
        """Enqueue a packet.  False if the channel is closed or stayed full."""
        if self._closed.is_set():
            return False
        try:
            self._queue.put(packet, timeout=timeout)
        except queue.Full:
            self.dropped += 1
            metrics.packets_dropped.inc()
            log.warning("ingest_channel_full", dropped=self.dropped)
            return False
        return True

    def close(self, timeout: float | None = None) -> None:
        """Stop accepting packets, let workers drain what is queued, then join."""
        self._closed.set()
        if not self._started:
            return
        for _ in self._workers:
            self._queue.put(_CLOSE)
        for t in self._workers:
            if t.is_alive():
                t.join(timeout)

    def pending(self) -> int:
        return self._queue.qsize()

    def _run(self) -> None:
        while True:
            packet = self._queue.get()
            try:
                if packet is _CLOSE:
                    return
                self._handler(packet)
            except Exception:
                # ingest() already swallows its own errors; this guards custom handlers.
                log.exception("ingest_handler_failed")
            finally:
                self._queue.task_done()
