"""Bounded-concurrency job queue with progress and completion callbacks."""

from __future__ import annotations

import math
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Event, Lock
from typing import Callable, Optional

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "job_queue"})

ProgressCallback = Callable[[str, int], None]
CompleteCallback = Callable[[], None]
Job = Callable[[], object]


class BoundedJobQueue:
    """Run submitted jobs with at most ``job_limit`` in flight.

    Jobs start in submission order. After each job finishes, the progress
    callback receives ``(label, percent)`` where percent is
    ``round(completed / total * 100)``. When ``completed`` reaches ``total``
    the completion callback fires once and the counters reset, so the queue
    can be reused for the next batch. A job that raises still counts as
    completed; the error is logged. There is no cancellation and no timeout.
    """

    def __init__(
        self,
        job_limit: int = 10,
        label: str = "jobs",
        progress_callback: Optional[ProgressCallback] = None,
        complete_callback: Optional[CompleteCallback] = None,
    ) -> None:
        if job_limit <= 0:
            raise ValueError("job_limit must be positive")
        self.job_limit = job_limit
        self.label = label
        self.progress_callback = progress_callback
        self.complete_callback = complete_callback
        self.total = 0
        self.completed = 0
        self._declared = False
        self._lock = Lock()
        self._idle = Event()
        self._idle.set()
        self._executor = ThreadPoolExecutor(max_workers=job_limit, thread_name_prefix="quire-job")

    def set_total(self, total: int) -> None:
        """Declare how many jobs make up the current batch."""

        with self._lock:
            self.total = total
            self._declared = True
            if total > self.completed:
                self._idle.clear()

    def submit(self, job: Job) -> Future:
        with self._lock:
            if not self._declared:
                self.total += 1
            self._idle.clear()
        return self._executor.submit(self._run, job)

    def _run(self, job: Job) -> object:
        result: object = None
        try:
            result = job()
        except Exception as exc:
            LOGGER.error("job_failed", extra={"label": self.label, "error": str(exc)}, exc_info=True)
        finally:
            self._finish()
        return result

    def _finish(self) -> None:
        with self._lock:
            self.completed += 1
            completed, total = self.completed, self.total
            done = total > 0 and completed == total
            if done:
                self.completed = 0
                self.total = 0
                self._declared = False

        try:
            if self.progress_callback is not None and total:
                self._notify(self.progress_callback, self.label, math.floor(completed / total * 100 + 0.5))
            if done:
                LOGGER.info("job_batch_complete", extra={"label": self.label, "total": total})
                if self.complete_callback is not None:
                    self._notify(self.complete_callback)
        finally:
            if done:
                self._idle.set()

    def _notify(self, callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        except Exception as exc:
            LOGGER.error("job_callback_failed", extra={"label": self.label, "error": str(exc)}, exc_info=True)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current batch completes; returns ``False`` on timeout."""

        return self._idle.wait(timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "BoundedJobQueue":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["BoundedJobQueue"]
