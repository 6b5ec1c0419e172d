"""Bounded fan-out for independent units of work.

Each stage of the pipeline fans out over repositories or commits. A pool
runs one coroutine per unit with at most `size` in flight, a per-unit
timeout (counted from the moment the unit starts, not from submission)
and an overall drain deadline after which whatever is still running or
waiting is cancelled.

A failing, timed-out or cancelled unit never fails the pool; callers get
a PoolOutcome and decide what a missing unit means for them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from app.logging_config import get_logger
from app.metrics import POOL_UNITS

logger = get_logger(__name__)

U = TypeVar("U")
R = TypeVar("R")


@dataclass
class PoolOutcome(Generic[U, R]):
    """Per-unit results of one pool run, in submission order."""

    completed: list[tuple[U, R]] = field(default_factory=list)
    failed: list[tuple[U, BaseException]] = field(default_factory=list)
    timed_out: list[U] = field(default_factory=list)
    cancelled: list[U] = field(default_factory=list)

    @property
    def results(self) -> list[R]:
        return [result for _, result in self.completed]

    @property
    def all_completed(self) -> bool:
        return not (self.failed or self.timed_out or self.cancelled)


class BoundedTaskPool:
    """Run a coroutine per unit with bounded concurrency and deadlines."""

    def __init__(
        self,
        name: str,
        size: int,
        task_timeout: float,
        drain_timeout: float,
    ) -> None:
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.name = name
        self.size = size
        self.task_timeout = task_timeout
        self.drain_timeout = drain_timeout

    @classmethod
    def sized_for(
        cls,
        name: str,
        unit_count: int,
        cap: int,
        task_timeout: float,
        drain_timeout: float,
    ) -> BoundedTaskPool:
        """Pool of min(unit_count, cap) workers, never fewer than one."""
        return cls(name, max(1, min(unit_count, cap)), task_timeout, drain_timeout)

    async def run(
        self,
        units: Iterable[U],
        worker: Callable[[U], Awaitable[R]],
        describe: Callable[[U], str] = str,
    ) -> PoolOutcome[U, R]:
        semaphore = asyncio.Semaphore(self.size)

        async def guarded(unit: U) -> R:
            async with semaphore:
                return await asyncio.wait_for(worker(unit), timeout=self.task_timeout)

        tasks = [(unit, asyncio.ensure_future(guarded(unit))) for unit in units]
        outcome: PoolOutcome[U, R] = PoolOutcome()
        if not tasks:
            return outcome

        try:
            _, pending = await asyncio.wait(
                [task for _, task in tasks], timeout=self.drain_timeout
            )
            if pending:
                logger.warning(
                    "pool_drain_timeout",
                    pool=self.name,
                    pending=len(pending),
                    drain_timeout=self.drain_timeout,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            # Caller cancelled: do not leave orphaned units behind
            for _, task in tasks:
                if not task.done():
                    task.cancel()

        for unit, task in tasks:
            status = self._collect(outcome, unit, task, describe)
            POOL_UNITS.labels(pool=self.name, status=status).inc()

        logger.debug(
            "pool_finished",
            pool=self.name,
            units=len(tasks),
            completed=len(outcome.completed),
            failed=len(outcome.failed),
            timed_out=len(outcome.timed_out),
            cancelled=len(outcome.cancelled),
        )
        return outcome

    def _collect(
        self,
        outcome: PoolOutcome[U, R],
        unit: U,
        task: asyncio.Future[R],
        describe: Callable[[U], str],
    ) -> str:
        if task.cancelled():
            outcome.cancelled.append(unit)
            return "cancelled"

        exc = task.exception()
        if exc is None:
            outcome.completed.append((unit, task.result()))
            return "completed"

        if isinstance(exc, asyncio.TimeoutError):
            logger.warning(
                "pool_unit_timeout",
                pool=self.name,
                unit=describe(unit),
                timeout=self.task_timeout,
            )
            outcome.timed_out.append(unit)
            return "timeout"

        logger.warning(
            "pool_unit_failed",
            pool=self.name,
            unit=describe(unit),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        outcome.failed.append((unit, exc))
        return "failed"
