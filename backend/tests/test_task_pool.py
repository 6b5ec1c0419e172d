"""Tests for the bounded task pool."""

import asyncio

import pytest

from services.task_pool import BoundedTaskPool


class TestPoolSizing:
    def test_sized_for_caps_workers(self):
        pool = BoundedTaskPool.sized_for("t", unit_count=50, cap=10, task_timeout=1, drain_timeout=1)
        assert pool.size == 10

    def test_sized_for_small_input(self):
        pool = BoundedTaskPool.sized_for("t", unit_count=3, cap=10, task_timeout=1, drain_timeout=1)
        assert pool.size == 3

    def test_sized_for_empty_input_keeps_one_worker(self):
        pool = BoundedTaskPool.sized_for("t", unit_count=0, cap=10, task_timeout=1, drain_timeout=1)
        assert pool.size == 1

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            BoundedTaskPool("t", size=0, task_timeout=1, drain_timeout=1)


@pytest.mark.asyncio
class TestPoolRun:
    async def test_collects_results_in_submission_order(self):
        pool = BoundedTaskPool("t", size=3, task_timeout=1, drain_timeout=2)

        async def double(n: int) -> int:
            await asyncio.sleep(0.01 * (5 - n))
            return n * 2

        outcome = await pool.run([1, 2, 3, 4], double)
        assert outcome.results == [2, 4, 6, 8]
        assert outcome.all_completed

    async def test_empty_input(self):
        pool = BoundedTaskPool("t", size=1, task_timeout=1, drain_timeout=1)
        outcome = await pool.run([], lambda n: asyncio.sleep(0))
        assert outcome.completed == []
        assert outcome.all_completed

    async def test_concurrency_never_exceeds_size(self):
        pool = BoundedTaskPool("t", size=2, task_timeout=1, drain_timeout=2)
        in_flight = 0
        peak = 0

        async def work(n: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            return n

        await pool.run(range(8), work)
        assert peak == 2

    async def test_failure_is_isolated(self):
        pool = BoundedTaskPool("t", size=3, task_timeout=1, drain_timeout=2)

        async def work(n: int) -> int:
            if n == 2:
                raise RuntimeError("boom")
            return n

        outcome = await pool.run([1, 2, 3], work)
        assert outcome.results == [1, 3]
        assert [unit for unit, _ in outcome.failed] == [2]
        assert isinstance(outcome.failed[0][1], RuntimeError)

    async def test_unit_timeout(self):
        pool = BoundedTaskPool("t", size=2, task_timeout=0.05, drain_timeout=2)

        async def work(n: int) -> int:
            await asyncio.sleep(1 if n == 1 else 0)
            return n

        outcome = await pool.run([1, 2], work)
        assert outcome.timed_out == [1]
        assert outcome.results == [2]

    async def test_timeout_starts_when_unit_starts(self):
        # Queued units wait for a slot without consuming their own timeout
        pool = BoundedTaskPool("t", size=1, task_timeout=0.15, drain_timeout=2)

        async def work(n: int) -> int:
            await asyncio.sleep(0.1)
            return n

        outcome = await pool.run([1, 2, 3], work)
        assert outcome.results == [1, 2, 3]

    async def test_drain_timeout_cancels_pending_units(self):
        pool = BoundedTaskPool("t", size=1, task_timeout=5, drain_timeout=0.1)
        started: list[int] = []

        async def work(n: int) -> int:
            started.append(n)
            await asyncio.sleep(0.3 if n == 1 else 0)
            return n

        outcome = await pool.run([1, 2, 3], work)
        assert outcome.completed == []
        assert outcome.cancelled == [1, 2, 3]
        assert started == [1]
