"""
core/background.py -- Best-effort, fire-and-forget work queue.

Audit writes and outbound notices must never block or fail the flow that
triggered them. BestEffortWorker runs submitted callables on a single
background thread, in submission order, and logs (never raises) anything
that goes wrong -- both failures inside the job and failures to enqueue it.

The queue is bounded (max_pending, counting the running job). Once it is
full, new jobs are dropped with an error log line.

A single worker thread keeps ordering deterministic: entries for one flow
land in the order they were recorded, and flush() can wait for everything
queued so far by queueing a no-op behind it.

Layer rule: core/ is the kernel. No imports from api/, auth/ or audit/.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable

DEFAULT_MAX_PENDING = 10_000


class BestEffortWorker:
    """Single-thread executor whose jobs can fail without anyone noticing but the log.

    Usage:
        worker = BestEffortWorker("audit", logger)
        worker.submit(store.write, entry, description="audit write")
        worker.flush()      # tests / shutdown: wait for queued jobs
        worker.close()
    """

    def __init__(self, name: str, logger: logging.Logger, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self._name = name
        self._logger = logger
        self._max_pending = max_pending
        self._pending = 0
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"tasknest-{name}")
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any, description: str = "", **kwargs: Any) -> None:
        """Queue fn(*args, **kwargs). Returns immediately; never raises.

        Dropped (and logged) when max_pending jobs are already queued.
        """
        label = description or getattr(fn, "__name__", "job")
        with self._lock:
            if self._pending >= self._max_pending:
                self._logger.error("%s worker queue full (%d); dropped %s", self._name, self._max_pending, label)
                return
            self._pending += 1
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except RuntimeError:
            # Executor already shut down (process teardown).
            self._release()
            self._logger.error("%s worker closed; dropped %s", self._name, label)
            return
        future.add_done_callback(lambda f: self._report(f, label))

    def _release(self) -> None:
        with self._lock:
            self._pending -= 1

    @property
    def pending(self) -> int:
        """Jobs queued or running."""
        with self._lock:
            return self._pending

    def _report(self, future: Future, label: str) -> None:
        self._release()
        exc = future.exception()
        if exc is not None:
            self._logger.error(
                "%s worker: %s failed: %s",
                self._name,
                label,
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    def flush(self, timeout: float | None = 5.0) -> bool:
        """Block until every job queued before this call has finished.

        Returns False if the wait timed out or the worker is closed.
        """
        if self._closed:
            return False
        try:
            self._executor.submit(lambda: None).result(timeout=timeout)
        except (FutureTimeout, RuntimeError):
            return False
        return True

    def close(self) -> None:
        """Drain the queue and stop the worker thread. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
