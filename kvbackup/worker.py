"""A bounded pool of worker threads."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable

log = logging.getLogger(__name__)


class WorkerPool:
    """Runs tasks on threads, never more than ``limit`` at a time."""

    def __init__(self, limit: int, name: str) -> None:
        if limit < 1:
            raise ValueError("a worker pool needs at least one worker")
        self.limit = limit
        self.name = name
        self._workers: queue.Queue[int] = queue.Queue()
        for worker_id in range(1, limit + 1):
            self._workers.put(worker_id)
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._errors: list[Exception] = []

    def apply(self, fn: Callable[[], object]) -> None:
        """Run fn on a free worker, blocking until one is free."""
        try:
            worker = self._workers.get_nowait()
        except queue.Empty:
            log.debug("wait for workers, pool=%s", self.name)
            worker = self._workers.get()
        thread = threading.Thread(
            target=self._run, args=(fn, worker), name=f"{self.name}-{worker}", daemon=True
        )
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def _run(self, fn: Callable[[], object], worker: int) -> None:
        try:
            fn()
        except Exception as exc:  # reported by wait()
            with self._lock:
                self._errors.append(exc)
        finally:
            self._workers.put(worker)

    def has_worker(self) -> bool:
        """Return True if some worker is free."""
        return not self._workers.empty()

    def wait(self) -> None:
        """Wait for every applied task; re-raise the first task failure."""
        while True:
            with self._lock:
                threads, self._threads = self._threads, []
            if not threads:
                break
            for thread in threads:
                thread.join()
        with self._lock:
            errors, self._errors = self._errors, []
        if errors:
            raise errors[0]