"""A simple fixed-size worker pool."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from types import TracebackType

_log = logging.getLogger(__name__)

Job = Callable[[], object]


class Pool:
    """Runs submitted jobs on a fixed number of worker threads.

    ``execute`` hands a job over to a worker and returns once a worker has
    taken it, so submitters block while every worker is busy.
    """

    def __init__(self, workers: int) -> None:
        if workers < 0:
            raise ValueError(f"workers must not be negative, got {workers}")
        self._jobs: queue.SimpleQueue[tuple[Job, threading.Event] | None] = queue.SimpleQueue()
        self._lock = threading.Lock()
        self._stopped = False
        self._threads = [
            threading.Thread(target=self._work, name=f"pool-worker-{n}", daemon=True)
            for n in range(workers)
        ]
        for thread in self._threads:
            thread.start()

    def _work(self) -> None:
        while True:
            item = self._jobs.get()
            if item is None:
                return
            job, taken = item
            taken.set()
            try:
                job()
            except Exception:
                _log.exception("pool job failed")

    def execute(self, job: Job) -> None:
        """Hand ``job`` to one of the workers, waiting until one takes it."""
        with self._lock:
            if self._stopped:
                raise RuntimeError("pool is stopped")
            if not self._threads:
                raise RuntimeError("pool has no workers")
            taken = threading.Event()
            self._jobs.put((job, taken))
        taken.wait()

    def stop(self) -> None:
        """Halt all workers once they finish what they are running."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            for _ in self._threads:
                self._jobs.put(None)

    def __enter__(self) -> Pool:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()