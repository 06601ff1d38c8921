"""Tests for the relational storage strategy against SQLite."""

import asyncio
from unittest.mock import Mock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.adapters.storage.sql import (
    SqlCounterStore,
    SqlRateLimiter,
    rate_limits_table,
)
from app.core.errors import StoreUnavailableError

HOUR_MS = 60 * 60 * 1000
NOW = 1_700_000_000_000


def _limiter(engine, limit: int = 50) -> SqlRateLimiter:
    return SqlRateLimiter(engine, limit=limit, window_ms=HOUR_MS, timeout_seconds=5.0)


async def _window_rows(engine) -> int:
    async with engine.connect() as conn:
        return (await conn.execute(select(func.count()).select_from(rate_limits_table))).scalar_one()


class TestSqlCounterStore:
    @pytest.mark.asyncio
    async def test_read_before_any_increment_is_zero(self, sql_engine) -> None:
        store = SqlCounterStore(sql_engine, timeout_seconds=5.0)

        assert await store.read("hello-world") == 0
        assert await store.read("hello-world") == 0

    @pytest.mark.asyncio
    async def test_increment_creates_then_merges(self, sql_engine) -> None:
        store = SqlCounterStore(sql_engine, timeout_seconds=5.0)

        assert await store.increment("post", 3, now_ms=NOW) == 3
        assert await store.increment("post", 4, now_ms=NOW + 1) == 7
        assert await store.read("post") == 7
        assert await store.read("other-post") == 0

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_never_lost(self, sql_engine) -> None:
        store = SqlCounterStore(sql_engine, timeout_seconds=30.0)
        amounts = [(i % 10) + 1 for i in range(40)]

        await asyncio.gather(*(store.increment("busy", a, now_ms=NOW) for a in amounts))

        assert await store.read("busy") == sum(amounts)

    @pytest.mark.asyncio
    async def test_rejects_non_positive_amount(self, sql_engine) -> None:
        store = SqlCounterStore(sql_engine, timeout_seconds=5.0)

        with pytest.raises(ValueError):
            await store.increment("post", 0, now_ms=NOW)

    @pytest.mark.asyncio
    async def test_database_errors_become_store_unavailable(self, sql_engine) -> None:
        store = SqlCounterStore(sql_engine, timeout_seconds=5.0)
        error = OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        store._engine = Mock(begin=Mock(side_effect=error))

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.read("post")

        assert exc_info.value.code == "store_unavailable"
        assert exc_info.value.details["operation"] == "counter.read"

    @pytest.mark.asyncio
    async def test_timeouts_become_store_unavailable(self, sql_engine) -> None:
        store = SqlCounterStore(sql_engine, timeout_seconds=0.01)

        async def _slow(conn):
            await asyncio.sleep(1)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store._run("counter.read", _slow)

        assert exc_info.value.code == "store_timeout"


class TestSqlRateLimiter:
    @pytest.mark.asyncio
    async def test_admits_up_to_limit(self, sql_engine) -> None:
        limiter = _limiter(sql_engine, limit=50)

        for _ in range(5):
            assert (await limiter.try_admit("tok", "post", 10, now_ms=NOW)).admitted

        result = await limiter.try_admit("tok", "post", 1, now_ms=NOW)
        assert result.admitted is False
        assert result.retry_after_seconds is not None
        assert result.retry_after_seconds > 0

    @pytest.mark.asyncio
    async def test_rejection_leaves_count_untouched(self, sql_engine) -> None:
        limiter = _limiter(sql_engine, limit=50)
        window = (NOW // HOUR_MS) * HOUR_MS

        first = await limiter.try_admit("tok", "post", 30, now_ms=NOW)
        second = await limiter.try_admit("tok", "post", 30, now_ms=NOW + 1)

        assert first.admitted is True
        assert first.remaining == 20
        assert second.admitted is False
        assert await limiter.read_window("tok", "post", window) == 30

    @pytest.mark.asyncio
    async def test_windows_reset_independently_at_boundary(self, sql_engine) -> None:
        limiter = _limiter(sql_engine, limit=50)
        boundary = (NOW // HOUR_MS + 1) * HOUR_MS

        before = await limiter.try_admit("tok", "post", 50, now_ms=boundary - 1)
        after = await limiter.try_admit("tok", "post", 50, now_ms=boundary)

        assert before.admitted is True
        assert after.admitted is True
        assert after.window_start == boundary
        assert before.reset_at == boundary

    @pytest.mark.asyncio
    async def test_isolated_by_client_and_resource(self, sql_engine) -> None:
        limiter = _limiter(sql_engine, limit=10)

        assert (await limiter.try_admit("tok-a", "post", 10, now_ms=NOW)).admitted
        assert not (await limiter.try_admit("tok-a", "post", 1, now_ms=NOW)).admitted
        assert (await limiter.try_admit("tok-b", "post", 10, now_ms=NOW)).admitted
        assert (await limiter.try_admit("tok-a", "other", 10, now_ms=NOW)).admitted

    @pytest.mark.asyncio
    async def test_amount_above_limit_is_rejected_without_writing(self, sql_engine) -> None:
        limiter = _limiter(sql_engine, limit=5)

        result = await limiter.try_admit("tok", "post", 6, now_ms=NOW)

        assert result.admitted is False
        assert await _window_rows(sql_engine) == 0

    @pytest.mark.asyncio
    async def test_concurrent_attempts_never_exceed_limit(self, sql_engine) -> None:
        limiter = SqlRateLimiter(sql_engine, limit=50, window_ms=HOUR_MS, timeout_seconds=30.0)
        amounts = [7] * 20

        results = await asyncio.gather(
            *(limiter.try_admit("tok", "post", a, now_ms=NOW) for a in amounts)
        )

        admitted = sum(a for a, r in zip(amounts, results) if r.admitted)
        window = (NOW // HOUR_MS) * HOUR_MS
        assert admitted == 49
        assert await limiter.read_window("tok", "post", window) == admitted

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, sql_engine) -> None:
        limiter = _limiter(sql_engine)

        with pytest.raises(ValueError):
            await limiter.try_admit("", "post", 1, now_ms=NOW)
        with pytest.raises(ValueError):
            await limiter.try_admit("tok", "post", 0, now_ms=NOW)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"limit": 0, "window_ms": HOUR_MS},
            {"limit": 1, "window_ms": 0},
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_constructor_args(self, sql_engine, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            SqlRateLimiter(sql_engine, timeout_seconds=5.0, **kwargs)


class TestSqlCompaction:
    @pytest.mark.asyncio
    async def test_deletes_only_windows_before_cutoff(self, sql_engine) -> None:
        limiter = _limiter(sql_engine)
        await limiter.try_admit("tok", "old", 1, now_ms=NOW - 3 * HOUR_MS)
        await limiter.try_admit("tok", "recent", 1, now_ms=NOW)

        deleted = await limiter.delete_expired(NOW - 2 * HOUR_MS, batch_size=1000)

        assert deleted == 1
        assert await _window_rows(sql_engine) == 1

    @pytest.mark.asyncio
    async def test_batch_size_bounds_each_delete(self, sql_engine) -> None:
        limiter = _limiter(sql_engine)
        for i in range(5):
            await limiter.try_admit(f"tok-{i}", "old", 1, now_ms=NOW - 5 * HOUR_MS)

        assert await limiter.delete_expired(NOW, batch_size=2) == 2
        assert await limiter.delete_expired(NOW, batch_size=2) == 2
        assert await limiter.delete_expired(NOW, batch_size=2) == 1
        assert await limiter.delete_expired(NOW, batch_size=2) == 0

    @pytest.mark.asyncio
    async def test_compacted_window_starts_from_zero(self, sql_engine) -> None:
        limiter = _limiter(sql_engine, limit=50)
        old_now = NOW - 3 * HOUR_MS
        assert (await limiter.try_admit("tok", "post", 50, now_ms=old_now)).admitted
        assert not (await limiter.try_admit("tok", "post", 1, now_ms=old_now)).admitted

        await limiter.delete_expired(NOW - 2 * HOUR_MS, batch_size=1000)

        # Same (client, resource, window) key as before compaction
        fresh = await limiter.try_admit("tok", "post", 10, now_ms=old_now)
        assert fresh.admitted is True
        assert fresh.remaining == 40
