"""Single poll scheduler for every feed of a monitoring view.

Each registered job has its own interval. A tick starts every job that is
due, except jobs whose previous fetch is still in flight: those are skipped,
never queued. Results are delivered only while the job's cancellation token
is live, so nothing fetched after a view is torn down gets applied.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class CancelToken:
    """Liveness flag handed to every asynchronous fetch of one view."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class PollJob:
    feed: str
    interval: float
    fetch: Callable[[], Any]
    on_result: Callable[[Any], None]
    on_error: Optional[Callable[[Exception], None]] = None
    token: CancelToken = field(default_factory=CancelToken)
    next_due: float = 0.0
    in_flight: bool = False
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    discarded: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "feed": self.feed,
            "interval": self.interval,
            "in_flight": self.in_flight,
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "discarded": self.discarded,
            "last_error": self.last_error,
        }


class PollScheduler(threading.Thread):
    """Daemon thread driving every registered PollJob.

    Without an executor, `tick()` runs fetches inline. `run()` creates a
    small thread pool so a slow backend only delays its own feed.
    """

    def __init__(
        self,
        executor=None,
        clock: Callable[[], float] = time.monotonic,
        resolution: float = 0.5,
    ):
        super().__init__(daemon=True, name="poll-scheduler")
        self._executor = executor
        self._owns_executor = False
        self._clock = clock
        self._resolution = resolution
        self._jobs: dict[str, PollJob] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    def register(
        self,
        feed: str,
        interval: float,
        fetch: Callable[[], Any],
        on_result: Callable[[Any], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        token: Optional[CancelToken] = None,
    ) -> PollJob:
        if interval <= 0:
            raise ValueError("poll interval must be positive")
        job = PollJob(
            feed=feed,
            interval=interval,
            fetch=fetch,
            on_result=on_result,
            on_error=on_error,
            token=token or CancelToken(),
        )
        with self._lock:
            self._jobs[feed] = job
        self._wake_event.set()
        return job

    def unregister(self, feed: str) -> None:
        with self._lock:
            self._jobs.pop(feed, None)

    def job(self, feed: str) -> Optional[PollJob]:
        return self._jobs.get(feed)

    def request_now(self, feed: str) -> None:
        """Make a feed due on the next tick (still subject to the in-flight rule)."""
        with self._lock:
            job = self._jobs.get(feed)
            if job is not None:
                job.next_due = 0.0
        self._wake_event.set()

    @property
    def status(self) -> dict:
        with self._lock:
            return {feed: job.to_dict() for feed, job in self._jobs.items()}

    def tick(self, now: Optional[float] = None) -> list[str]:
        """Start every due job; return the feeds that were started."""
        now = self._clock() if now is None else now
        started = []
        to_run = []

        with self._lock:
            for job in list(self._jobs.values()):
                if job.token.cancelled or now < job.next_due:
                    continue
                job.next_due = now + job.interval
                if job.in_flight:
                    job.skipped += 1
                    logger.debug("skipping %s tick: previous fetch still in flight", job.feed)
                    continue
                job.in_flight = True
                to_run.append(job)
                started.append(job.feed)

        for job in to_run:
            if self._executor is None:
                self._run_job(job)
            else:
                self._executor.submit(self._run_job, job)

        return started

    def _run_job(self, job: PollJob) -> None:
        try:
            result = job.fetch()
        except Exception as e:
            self._finish(job, error=e)
        else:
            self._finish(job, result=result)

    def _finish(self, job: PollJob, result: Any = None, error: Optional[Exception] = None) -> None:
        try:
            if job.token.cancelled:
                job.discarded += 1
                logger.debug("discarding %s result delivered after teardown", job.feed)
                return

            if error is not None:
                job.failures += 1
                job.last_error = str(error) or type(error).__name__
                logger.warning("poll of %s failed: %s", job.feed, job.last_error)
                if job.on_error is not None:
                    job.on_error(error)
                return

            job.runs += 1
            job.last_error = None
            job.on_result(result)
        except Exception:
            job.failures += 1
            logger.exception("applying %s poll result failed", job.feed)
        finally:
            with self._lock:
                job.in_flight = False

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()

    def run(self):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="syncwatch-poll")
            self._owns_executor = True

        try:
            while not self._stop_event.is_set():
                self.tick()
                self._wake_event.wait(timeout=self._resolution)
                self._wake_event.clear()
        finally:
            if self._owns_executor:
                self._executor.shutdown(wait=False)
