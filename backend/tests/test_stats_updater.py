"""Tests for stats persistence policy and the store's upsert statements."""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from app.exceptions import StatsNotFoundError, UnknownUserError
from services.file_accountant import FrameworkFileIndex
from services.stats_store import FrameworkUsageStore
from services.stats_updater import StatsUpdater, StatsWrite


@pytest.mark.asyncio
class TestStatsUpdater:
    async def test_creates_record(self, usage_store, fixed_now):
        user = usage_store.add_user("dev")
        index = FrameworkFileIndex()
        await index.add("React", "web/a.jsx")
        await index.add("React", "web/b.jsx")

        result = await StatsUpdater(usage_store, clock=lambda: fixed_now).update(user.id, index)

        assert result.outcome is StatsWrite.WRITTEN
        assert usage_store.usage[user.id].framework_usage == {"React": 2}
        assert usage_store.usage[user.id].last_updated == fixed_now

    async def test_non_empty_result_overwrites(self, usage_store, fixed_now):
        user = usage_store.add_user("dev")
        usage_store.set_usage(user.id, {"Django": 7}, fixed_now - timedelta(days=2))

        await StatsUpdater(usage_store, clock=lambda: fixed_now).update(user.id, {"React": 1})

        assert usage_store.usage[user.id].framework_usage == {"React": 1}
        assert usage_store.usage[user.id].last_updated == fixed_now

    async def test_empty_result_creates_when_absent(self, usage_store, fixed_now):
        user = usage_store.add_user("dev")

        result = await StatsUpdater(usage_store, clock=lambda: fixed_now).update(
            user.id, FrameworkFileIndex()
        )

        assert result.outcome is StatsWrite.CREATED_EMPTY
        assert usage_store.usage[user.id].framework_usage == {}

    async def test_empty_result_never_overwrites(self, usage_store, fixed_now):
        user = usage_store.add_user("dev")
        earlier = fixed_now - timedelta(days=2)
        usage_store.set_usage(user.id, {"Django": 7}, earlier)

        result = await StatsUpdater(usage_store, clock=lambda: fixed_now).update(user.id, {})

        assert result.outcome is StatsWrite.KEPT_EXISTING
        assert usage_store.usage[user.id].framework_usage == {"Django": 7}
        assert usage_store.usage[user.id].last_updated == earlier
        assert usage_store.writes[-1]["overwrite"] is False


def _session_returning(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    session = AsyncMock()
    session.execute.return_value = result
    return session


def _compiled(session) -> str:
    statement = session.execute.await_args.args[0]
    return str(statement.compile(dialect=postgresql.dialect()))


@pytest.mark.asyncio
class TestFrameworkUsageStore:
    async def test_overwrite_upsert_statement(self, fixed_now):
        session = _session_returning(uuid.uuid4())
        store = FrameworkUsageStore(session)

        written = await store.upsert_usage(uuid.uuid4(), {"React": 1}, fixed_now, overwrite=True)

        assert written is True
        sql = _compiled(session)
        assert "ON CONFLICT (user_id) DO UPDATE" in sql
        assert "RETURNING" in sql

    async def test_insert_only_statement(self, fixed_now):
        session = _session_returning(None)
        store = FrameworkUsageStore(session)

        written = await store.upsert_usage(uuid.uuid4(), {}, fixed_now, overwrite=False)

        assert written is False
        assert "ON CONFLICT (user_id) DO NOTHING" in _compiled(session)

    async def test_get_stats_unknown_user(self):
        store = FrameworkUsageStore(_session_returning(None))
        with pytest.raises(UnknownUserError):
            await store.get_stats("ghost")

    async def test_get_stats_without_record(self):
        user = MagicMock(id=uuid.uuid4())
        result_user = MagicMock()
        result_user.scalar_one_or_none.return_value = user
        result_none = MagicMock()
        result_none.scalar_one_or_none.return_value = None
        session = AsyncMock()
        session.execute.side_effect = [result_user, result_none]

        with pytest.raises(StatsNotFoundError):
            await FrameworkUsageStore(session).get_stats("dev")
