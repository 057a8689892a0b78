"""
Fixed-size pool of background worker threads.

Tasks are plain callables that own their error handling; the pool only
guarantees that a task escaping with an exception cannot take a worker slot
down with it.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Callable

from .errors import ServiceUnavailable

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 4


class WorkerPool:
    """
    Bounded executor for conversion tasks.

    ``submit`` never blocks: when every slot is busy the task waits in the
    executor's unbounded queue, so nothing is dropped.

    Attributes:
        size: Number of worker slots
    """

    def __init__(self, size: int = DEFAULT_POOL_SIZE, name: str = "omr-worker") -> None:
        if size < 1:
            raise ValueError("WorkerPool size must be at least 1")
        self.size = size
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix=name)
        self._lock = Lock()
        self._running = True

    @property
    def is_running(self) -> bool:
        return self._running

    def submit(self, task: Callable[[], None]) -> Future:
        """
        Queue ``task`` for execution and return without waiting.

        Raises:
            ServiceUnavailable: If the pool has been shut down
        """
        with self._lock:
            if not self._running:
                raise ServiceUnavailable("Worker pool is shut down")
            return self._executor.submit(self._guard, task)

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting tasks.

        With ``wait=True`` queued and running tasks are drained first;
        otherwise queued tasks are discarded and running ones finish on their
        own.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    @staticmethod
    def _guard(task: Callable[[], None]) -> None:
        try:
            task()
        except Exception:  # noqa: BLE001
            logger.exception("Worker task raised past its own error handling")
