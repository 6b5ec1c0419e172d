"""Data access for users and framework usage records."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import StatsNotFoundError, UnknownUserError
from db.models import FrameworkUsage, User


class FrameworkUsageStore:
    """Reads users and reads/writes `framework_usage` in one session.

    The session is committed by whoever owns it (request or task scope).
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_user(self, username: str) -> User | None:
        result = await self.session.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def get_usage(self, user_id: uuid.UUID) -> FrameworkUsage | None:
        result = await self.session.execute(
            select(FrameworkUsage).where(FrameworkUsage.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_stats(self, username: str) -> FrameworkUsage:
        user = await self.find_user(username)
        if user is None:
            raise UnknownUserError()
        usage = await self.get_usage(user.id)
        if usage is None:
            raise StatsNotFoundError()
        return usage

    async def upsert_usage(
        self,
        user_id: uuid.UUID,
        counts: dict[str, int],
        last_updated: datetime,
        *,
        overwrite: bool,
    ) -> bool:
        """Insert or update the user's record in one statement.

        With `overwrite=False` an existing record is left untouched.
        Returns True when a row was written.
        """
        stmt = pg_insert(FrameworkUsage).values(
            id=uuid.uuid4(),
            user_id=user_id,
            framework_usage=counts,
            last_updated=last_updated,
        )
        if overwrite:
            stmt = stmt.on_conflict_do_update(
                index_elements=[FrameworkUsage.user_id],
                set_={
                    "framework_usage": stmt.excluded.framework_usage,
                    "last_updated": stmt.excluded.last_updated,
                },
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[FrameworkUsage.user_id])

        result = await self.session.execute(stmt.returning(FrameworkUsage.id))
        return result.scalar_one_or_none() is not None
