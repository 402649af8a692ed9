"""Inference concurrency layer.

Architecture:
    ClassificationGate -> InferencePool.run_all (TaskGroup fan-out)
        -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Calls beyond the semaphore limit queue until a slot frees up or
``inference_queue_timeout`` elapses, in which case ``TimeoutError`` is raised.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from ovrcurator.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounds how many model calls run at once and where they run."""

    def __init__(self, settings: Settings) -> None:
        self._size = settings.max_concurrent
        self._timeout = settings.inference_queue_timeout
        self._semaphore = asyncio.Semaphore(self._size)
        self._executor = ThreadPoolExecutor(
            max_workers=self._size,
            thread_name_prefix="ovr-inference",
        )
        self._active_count = 0
        self._queue_depth = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a blocking model call on the inference threads.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    async def run_all(self, funcs: Sequence[Callable[..., T]], *args: object) -> list[T]:
        """Call every function in ``funcs`` with the same arguments, concurrently.

        Results come back in the order of ``funcs``. If any call fails the
        remaining ones are cancelled and an ``ExceptionGroup`` is raised.
        """
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(self.run(func, *args)) for func in funcs]
        return [task.result() for task in tasks]

    @property
    def size(self) -> int:
        return self._size

    @property
    def active_count(self) -> int:
        """Number of model calls currently executing."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of calls waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Wait for running calls, then stop the worker threads."""
        logger.debug("Shutting down inference pool (%d workers)", self._size)
        self._executor.shutdown(wait=True)
