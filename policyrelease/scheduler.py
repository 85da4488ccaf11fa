# scheduler.py — Bounded asyncio worker pool and cooperative cancellation.
# Units of work go onto a task queue; a fixed number of workers drain it and
# post results onto a result queue.

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Cooperative cancellation flag, safe to set from any thread.

    Checked between units of work, never in the middle of a network call.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class WorkerPool(Generic[T, R]):
    """Runs an async function over many items with at most *max_workers* in flight.

    Results come back in submission order.  Items that were never started
    because the run was cancelled come back as ``None``.  An exception raised
    by a unit cancels the remaining workers and propagates.

    Args:
        max_workers: Upper bound on concurrently running units (≥ 1).
        cancel:      Optional token checked before each unit starts.
        name:        Label used in log messages.
    """

    def __init__(
        self,
        max_workers: int,
        *,
        cancel: CancellationToken | None = None,
        name: str = "pool",
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.max_workers = max_workers
        self._cancel = cancel
        self._name = name
        self.peak_concurrency = 0
        self._active = 0

    async def map(
        self, func: Callable[[T], Awaitable[R]], items: Sequence[T]
    ) -> list[R | None]:
        tasks: asyncio.Queue[tuple[int, T]] = asyncio.Queue()
        results: asyncio.Queue[tuple[int, R | None]] = asyncio.Queue()
        for index, item in enumerate(items):
            tasks.put_nowait((index, item))

        worker_count = min(self.max_workers, len(items))
        workers = [
            asyncio.create_task(self._worker(func, tasks, results))
            for _ in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        ordered: list[R | None] = [None] * len(items)
        while not results.empty():
            index, result = results.get_nowait()
            ordered[index] = result
        return ordered

    async def _worker(
        self,
        func: Callable[[T], Awaitable[R]],
        tasks: asyncio.Queue[tuple[int, T]],
        results: asyncio.Queue[tuple[int, R | None]],
    ) -> None:
        while True:
            try:
                index, item = tasks.get_nowait()
            except asyncio.QueueEmpty:
                return

            if self._cancel is not None and self._cancel.cancelled:
                logger.debug("%s: cancelled, skipping unit %d", self._name, index)
                results.put_nowait((index, None))
                continue

            self._active += 1
            self.peak_concurrency = max(self.peak_concurrency, self._active)
            try:
                result = await func(item)
            finally:
                self._active -= 1
            results.put_nowait((index, result))
