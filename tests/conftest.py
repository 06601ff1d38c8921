"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before any app import so Pydantic settings
pick them up: in-memory SQLite storage, a known salt and allowed origin, and
no background compaction.
"""

import os

os.environ["APP_ENV"] = "testing"
os.environ.setdefault("APP_ALLOWED_ORIGINS", "https://blog.example.com")
os.environ.setdefault("CLAPS_IP_HASH_SALT", "test-salt")
os.environ.setdefault("CLAPS_COMPACTION_ENABLED", "false")
os.environ.setdefault("STORAGE_BACKEND", "sql")
os.environ.setdefault("STORAGE_DATABASE_URL", "sqlite+aiosqlite://")

from typing import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from app.adapters.storage.sql import create_engine, init_schema

ALLOWED_ORIGIN = "https://blog.example.com"


@pytest_asyncio.fixture
async def sql_engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine so concurrent tests get real connections."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'claps.db'}")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def origin_headers() -> dict[str, str]:
    return {"Origin": ALLOWED_ORIGIN}
