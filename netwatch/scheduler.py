"""Fixed-interval background tasks with graceful shutdown.

``stop()`` stops new ticks from starting; a pass that is already running is
allowed to finish before ``join()`` returns.
"""

import threading

import structlog

log = structlog.get_logger(__name__)


class PeriodicTask:

    def __init__(self, name: str, interval_seconds: float, fn, run_immediately: bool = False):
        self.name = name
        self.interval = interval_seconds
        self._fn = fn
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)
        self.runs = 0

    def start(self) -> "PeriodicTask":
        log.info("periodic_task_started", task=self.name, interval=self.interval)
        self._thread.start()
        return self

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout)
        log.info("periodic_task_stopped", task=self.name, runs=self.runs)

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def run_once(self) -> None:
        try:
            self._fn()
        except Exception:
            log.exception("periodic_task_failed", task=self.name)
        finally:
            self.runs += 1

    def _loop(self) -> None:
        if self._run_immediately and not self._stop.is_set():
            self.run_once()
        # Event.wait doubles as an interruptible sleep.
        while not self._stop.wait(self.interval):
            self.run_once()
