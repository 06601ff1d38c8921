"""Tests for storage strategy selection."""

import pytest

from app.adapters.storage import create_storage
from app.adapters.storage.kv import KeyValueRateLimiter
from app.adapters.storage.sql import SqlRateLimiter
from app.core.config import ClapSettings, Settings, StorageSettings
from app.core.errors import ValidationAppError


def _settings(backend: str) -> Settings:
    return Settings(
        claps=ClapSettings(max_per_client=20, window_ms=60_000, compaction_enabled=False),
        storage=StorageSettings(backend=backend, database_url="sqlite+aiosqlite://"),
    )


@pytest.mark.asyncio
async def test_sql_backend_is_atomic_and_schema_is_ready() -> None:
    storage = await create_storage(_settings("sql"))
    try:
        assert storage.atomic is True
        assert isinstance(storage.rate_limiter, SqlRateLimiter)
        assert storage.rate_limiter.limit == 20
        assert await storage.counter_store.read("fresh") == 0
    finally:
        await storage.close()


@pytest.mark.asyncio
async def test_memory_backend_runs_degraded() -> None:
    storage = await create_storage(_settings("memory"))

    assert storage.atomic is False
    assert isinstance(storage.rate_limiter, KeyValueRateLimiter)
    assert await storage.counter_store.increment("post", 2, now_ms=1) == 2
    await storage.close()


@pytest.mark.asyncio
async def test_backend_name_is_case_insensitive() -> None:
    storage = await create_storage(_settings("MEMORY"))

    assert storage.backend == "memory"


@pytest.mark.asyncio
async def test_unknown_backend_is_rejected() -> None:
    with pytest.raises(ValidationAppError) as exc_info:
        await create_storage(_settings("redis"))

    assert exc_info.value.code == "storage_unknown_backend"
