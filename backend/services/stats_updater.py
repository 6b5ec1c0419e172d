"""Persists computed framework usage. The only writer of `framework_usage`."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from app.logging_config import get_logger
from app.metrics import STATS_WRITES
from services.file_accountant import FrameworkFileIndex
from services.stats_store import FrameworkUsageStore

logger = get_logger(__name__)


class StatsWrite(str, Enum):
    WRITTEN = "written"
    CREATED_EMPTY = "created_empty"
    KEPT_EXISTING = "kept_existing"


@dataclass(frozen=True)
class StatsUpdateResult:
    outcome: StatsWrite
    counts: dict[str, int]


class StatsUpdater:
    """Applies the write policy for a freshly computed usage map.

    - non-empty map: upsert, last write wins
    - empty map: create a record if the user has none, never overwrite
    """

    def __init__(
        self,
        store: FrameworkUsageStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    async def update(
        self,
        user_id: uuid.UUID,
        usage: FrameworkFileIndex | Mapping[str, int],
    ) -> StatsUpdateResult:
        counts = usage.counts() if isinstance(usage, FrameworkFileIndex) else dict(usage)
        now = self._clock()

        if counts:
            await self.store.upsert_usage(user_id, counts, now, overwrite=True)
            outcome = StatsWrite.WRITTEN
        else:
            created = await self.store.upsert_usage(user_id, counts, now, overwrite=False)
            outcome = StatsWrite.CREATED_EMPTY if created else StatsWrite.KEPT_EXISTING

        STATS_WRITES.labels(outcome=outcome.value).inc()
        logger.info(
            "framework_usage_saved",
            user_id=str(user_id),
            outcome=outcome.value,
            frameworks=len(counts),
        )
        return StatsUpdateResult(outcome=outcome, counts=counts)
