"""Off-thread execution of process calls.

Each pipeline owns one scheduler backed by a single worker thread, so calls
submitted against that pipeline run one at a time and in submission order.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from .errors import ExecutionError

logger = logging.getLogger(__name__)

R = TypeVar("R")


class ExecutionScheduler:
    """Serial executor returning a ``Future`` per submitted call."""

    def __init__(self, thread_name_prefix: str = "dspipe-worker") -> None:
        self._thread_name_prefix = thread_name_prefix
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._submitted = 0
        self._alive = True

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=self._thread_name_prefix)
        return self._executor

    def submit(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> Future[R]:
        with self._lock:
            if not self._alive:
                raise ExecutionError("scheduler is shut down")
            self._submitted += 1
            return self._ensure_executor().submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work. Safe to call multiple times."""
        with self._lock:
            self._alive = False
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
            logger.debug("scheduler shut down after %d submissions", self._submitted)

    @property
    def alive(self) -> bool:
        return self._alive

    def stats(self) -> dict[str, Any]:
        return {"submitted": self._submitted, "alive": self._alive}
