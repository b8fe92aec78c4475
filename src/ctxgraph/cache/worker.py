"""Bounded background worker for cache repopulation."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger("ctxgraph.cache")


class BackgroundWorker:
    """Runs fire-and-forget jobs on a small thread pool.

    Failures never reach the submitter; they are logged and kept in a
    bounded error log. `drain` waits for outstanding jobs, `shutdown`
    stops the pool.
    """

    def __init__(self, max_workers: int = 2, max_errors: int = 100) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ctxgraph-cache"
        )
        self._pending: set[Future] = set()
        self._cond = threading.Condition()
        self.errors: deque[str] = deque(maxlen=max_errors)
        self.failures = 0
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any, label: str = "") -> Future | None:
        """Schedule a job. Returns None if the worker has been shut down."""
        name = label or getattr(fn, "__name__", "job")
        with self._cond:
            if self._closed:
                logger.debug("Worker closed, dropping job %s", name)
                return None
            future = self._executor.submit(fn, *args)
            self._pending.add(future)
        future.add_done_callback(lambda f: self._finished(f, name))
        return future

    def _finished(self, future: Future, label: str) -> None:
        exc = None if future.cancelled() else future.exception()
        with self._cond:
            if exc is not None:
                self.failures += 1
                self.errors.append(f"{label}: {exc}")
            self._pending.discard(future)
            self._cond.notify_all()
        if exc is not None:
            logger.warning("Background job %s failed: %s", label, exc)

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._pending)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every submitted job has finished. True if none remain."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def __enter__(self) -> BackgroundWorker:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
