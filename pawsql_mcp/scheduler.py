from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Job:
    name: str
    interval: float
    fn: Callable[[], Any]
    next_run: float = 0.0


class Scheduler:
    """Runs fixed-interval maintenance jobs on one daemon thread."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, name: str = "pawsql-scheduler"):
        self._clock = clock
        self._name = name
        self._jobs: List[Job] = []
        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    def add_job(self, name: str, interval: float, fn: Callable[[], Any]) -> Job:
        if interval <= 0:
            raise ValueError(f"interval for job {name} must be positive")
        job = Job(name=name, interval=interval, fn=fn, next_run=self._clock() + interval)
        with self._lock:
            self._jobs.append(job)
        return job

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_pending(self) -> int:
        """Run every job that is due. Returns how many ran."""
        now = self._clock()
        with self._lock:
            due = [j for j in self._jobs if j.next_run <= now]
        for job in due:
            try:
                result = job.fn()
                logger.debug("Job %s finished: %s", job.name, result)
            except Exception:
                logger.exception("Scheduled job %s failed", job.name)
            job.next_run = now + job.interval
        return len(due)

    def _seconds_until_next(self) -> float:
        with self._lock:
            if not self._jobs:
                return 60.0
            return max(0.0, min(j.next_run for j in self._jobs) - self._clock())

    def _loop(self, stop_event: threading.Event) -> None:
        logger.info("Scheduler started with %d jobs", len(self._jobs))
        while not stop_event.is_set():
            self.run_pending()
            stop_event.wait(timeout=self._seconds_until_next())
        logger.info("Scheduler stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            args=(self._stop_event,),
            daemon=True,
            name=self._name,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
