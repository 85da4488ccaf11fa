# test_scheduler.py — Tests for the bounded worker pool and cancellation token.

from __future__ import annotations

import asyncio

import pytest

from policyrelease.scheduler import CancellationToken, WorkerPool


class TestCancellationToken:
    """Cooperative cancellation flag."""

    def test_starts_uncancelled(self) -> None:
        assert not CancellationToken().cancelled

    def test_cancel_is_sticky(self) -> None:
        token = CancellationToken()
        token.cancel()
        token.cancel()
        assert token.cancelled


class TestWorkerPool:
    """Bounded concurrent mapping over work items."""

    def test_results_in_submission_order(self) -> None:
        async def _work(n: int) -> int:
            await asyncio.sleep(0.01 * (5 - n))
            return n * n

        results = asyncio.run(WorkerPool(3).map(_work, [1, 2, 3, 4, 5]))
        assert results == [1, 4, 9, 16, 25]

    def test_concurrency_is_bounded(self) -> None:
        pool: WorkerPool[int, int] = WorkerPool(2)

        async def _work(n: int) -> int:
            await asyncio.sleep(0.01)
            return n

        asyncio.run(pool.map(_work, list(range(10))))
        assert pool.peak_concurrency == 2

    def test_single_worker_is_sequential(self) -> None:
        order: list[str] = []

        async def _work(n: int) -> None:
            order.append(f"start-{n}")
            await asyncio.sleep(0)
            order.append(f"end-{n}")

        asyncio.run(WorkerPool(1).map(_work, [1, 2]))
        assert order == ["start-1", "end-1", "start-2", "end-2"]

    def test_empty_input(self) -> None:
        async def _work(n: int) -> int:
            return n

        assert asyncio.run(WorkerPool(4).map(_work, [])) == []

    def test_cancellation_skips_remaining_units(self) -> None:
        """Units not yet started when the token fires come back as None."""
        token = CancellationToken()

        async def _work(n: int) -> int:
            if n == 2:
                token.cancel()
            return n

        results = asyncio.run(WorkerPool(1, cancel=token).map(_work, [1, 2, 3, 4]))
        assert results == [1, 2, None, None]

    def test_exception_propagates(self) -> None:
        async def _work(n: int) -> int:
            if n == 3:
                raise RuntimeError("unit failed")
            await asyncio.sleep(0.01)
            return n

        with pytest.raises(RuntimeError, match="unit failed"):
            asyncio.run(WorkerPool(2).map(_work, [1, 2, 3, 4]))

    def test_rejects_zero_workers(self) -> None:
        with pytest.raises(ValueError):
            WorkerPool(0)
