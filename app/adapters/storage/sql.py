"""Relational storage strategy (SQLAlchemy async).

Both operations that mutate state compile to a single
``INSERT .. ON CONFLICT DO UPDATE`` statement, so the database performs the
read, the arithmetic and the write as one step:

- counter increments merge ``count = count + excluded.count`` and return the
  new total;
- admissions carry a ``WHERE`` clause on the conflict update that re-checks
  the post-merge sum against the ceiling. When it fails no row is written and
  nothing is returned.

Supported dialects: SQLite (3.35+, via aiosqlite) and PostgreSQL (asyncpg).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    delete,
    literal_column,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from app.adapters.storage.base import (
    AbstractCounterStore,
    AbstractRateLimiter,
    StoreCapabilities,
)
from app.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

metadata = MetaData()

claps_table = Table(
    "claps",
    metadata,
    Column("resource_id", String(200), primary_key=True),
    Column("count", BigInteger, nullable=False, server_default="0"),
    Column("updated_at", BigInteger, nullable=False),
)

rate_limits_table = Table(
    "rate_limits",
    metadata,
    Column("client_token", String(64), nullable=False),
    Column("resource_id", String(200), nullable=False),
    Column("window_start", BigInteger, nullable=False),
    Column("count", Integer, nullable=False, server_default="0"),
    Column("updated_at", BigInteger, nullable=False),
    PrimaryKeyConstraint("client_token", "resource_id", "window_start"),
    Index("idx_rate_limits_window_start", "window_start"),
)

SQL_CAPABILITIES = StoreCapabilities(atomic_upsert=True, compare_and_swap=True)

_INSERT_BY_DIALECT = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}

# Physical row identifiers used to delete compaction batches by position
_ROW_ID_BY_DIALECT = {
    "sqlite": "rowid",
    "postgresql": "ctid",
}


def create_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the configured database.

    In-memory SQLite URLs share one connection so every session sees the
    same database.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_async_engine(database_url, **kwargs)


async def init_schema(engine: AsyncEngine) -> None:
    """Create the ``claps`` and ``rate_limits`` tables if they are missing."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def _insert_for(engine: AsyncEngine):
    dialect = engine.dialect.name
    try:
        return _INSERT_BY_DIALECT[dialect]
    except KeyError:
        raise ValueError(
            f"Unsupported database dialect '{dialect}'. Supported: sqlite, postgresql"
        ) from None


class _SqlStore:
    """Shared engine handling: timeouts and error translation."""

    capabilities = SQL_CAPABILITIES

    def __init__(self, engine: AsyncEngine, *, timeout_seconds: float) -> None:
        self._engine = engine
        self._timeout = timeout_seconds
        self._insert = _insert_for(engine)

    async def _run(
        self,
        operation: str,
        work: Callable[[AsyncConnection], Awaitable[T]],
    ) -> T:
        """Run ``work`` in one transaction under the store timeout.

        A timeout can fire after the commit was sent, so a timed-out write
        may still have been applied.

        Raises:
            StoreUnavailableError: On timeout or any SQLAlchemy error.
        """

        async def _in_transaction() -> T:
            async with self._engine.begin() as conn:
                return await work(conn)

        try:
            return await asyncio.wait_for(_in_transaction(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "storage.unavailable",
                extra={"backend": "sql", "operation": operation, "reason": "timeout"},
            )
            raise StoreUnavailableError(
                code="store_timeout",
                message="The counter store did not respond in time",
                details={"operation": operation, "backend": "sql"},
            ) from exc
        except SQLAlchemyError as exc:
            logger.error(
                "storage.unavailable",
                extra={
                    "backend": "sql",
                    "operation": operation,
                    "reason": type(exc).__name__,
                },
            )
            raise StoreUnavailableError(
                code="store_unavailable",
                message="The counter store is temporarily unavailable",
                details={"operation": operation, "backend": "sql"},
            ) from exc


class SqlCounterStore(_SqlStore, AbstractCounterStore):
    """Counter backed by the ``claps`` table."""

    async def increment(self, resource_id: str, by: int, *, now_ms: int) -> int:
        if by < 1:
            raise ValueError("by must be >= 1")

        stmt = self._insert(claps_table).values(
            resource_id=resource_id, count=by, updated_at=now_ms
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[claps_table.c.resource_id],
            set_={
                "count": claps_table.c["count"] + stmt.excluded["count"],
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(claps_table.c["count"])

        async def _work(conn: AsyncConnection) -> int:
            result = await conn.execute(stmt)
            return int(result.scalar_one())

        return await self._run("counter.increment", _work)

    async def read(self, resource_id: str) -> int:
        stmt = select(claps_table.c["count"]).where(claps_table.c.resource_id == resource_id)

        async def _work(conn: AsyncConnection) -> int:
            result = await conn.execute(stmt)
            count = result.scalar_one_or_none()
            return int(count) if count is not None else 0

        return await self._run("counter.read", _work)


class SqlRateLimiter(_SqlStore, AbstractRateLimiter):
    """Fixed-window limiter backed by the ``rate_limits`` table."""

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        limit: int,
        window_ms: int,
        timeout_seconds: float,
    ) -> None:
        _SqlStore.__init__(self, engine, timeout_seconds=timeout_seconds)
        AbstractRateLimiter.__init__(self, limit=limit, window_ms=window_ms)
        self._row_id = literal_column(_ROW_ID_BY_DIALECT[engine.dialect.name])

    async def _conditional_add(
        self,
        client_token: str,
        resource_id: str,
        window_start: int,
        amount: int,
        now_ms: int,
    ) -> int | None:
        table = rate_limits_table
        stmt = self._insert(table).values(
            client_token=client_token,
            resource_id=resource_id,
            window_start=window_start,
            count=amount,
            updated_at=now_ms,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.client_token, table.c.resource_id, table.c.window_start],
            set_={
                "count": table.c["count"] + stmt.excluded["count"],
                "updated_at": stmt.excluded.updated_at,
            },
            where=(table.c["count"] + stmt.excluded["count"]) <= self._limit,
        ).returning(table.c["count"])

        async def _work(conn: AsyncConnection) -> int | None:
            result = await conn.execute(stmt)
            row = result.first()
            return int(row[0]) if row is not None else None

        return await self._run("limiter.try_admit", _work)

    async def read_window(self, client_token: str, resource_id: str, window_start: int) -> int:
        """Return the count consumed in one window (0 when absent)."""
        table = rate_limits_table
        stmt = select(table.c["count"]).where(
            table.c.client_token == client_token,
            table.c.resource_id == resource_id,
            table.c.window_start == window_start,
        )

        async def _work(conn: AsyncConnection) -> int:
            count = (await conn.execute(stmt)).scalar_one_or_none()
            return int(count) if count is not None else 0

        return await self._run("limiter.read_window", _work)

    async def delete_expired(self, cutoff_ms: int, *, batch_size: int) -> int:
        table = rate_limits_table
        victims = (
            select(self._row_id)
            .select_from(table)
            .where(table.c.window_start < cutoff_ms)
            .order_by(table.c.window_start)
            .limit(batch_size)
            .correlate(None)
        )
        stmt = delete(table).where(self._row_id.in_(victims))

        async def _work(conn: AsyncConnection) -> int:
            result = await conn.execute(stmt)
            return int(result.rowcount or 0)

        return await self._run("limiter.delete_expired", _work)
