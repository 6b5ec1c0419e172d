"""Shared API dependencies.

Wires the store and dispatcher per request.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_redis
from db.session import get_db_session
from services.job_dispatcher import CeleryJobPublisher, JobDispatcher, JobPublisher
from services.stats_store import FrameworkUsageStore


def get_store(session: AsyncSession = Depends(get_db_session)) -> FrameworkUsageStore:
    return FrameworkUsageStore(session)


def get_publisher() -> JobPublisher:
    return CeleryJobPublisher()


def get_dispatcher(
    store: FrameworkUsageStore = Depends(get_store),
    publisher: JobPublisher = Depends(get_publisher),
    redis: aioredis.Redis = Depends(get_redis),
) -> JobDispatcher:
    return JobDispatcher(store=store, publisher=publisher, redis=redis)
