"""Factory for the configured storage strategy."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from app.adapters.storage.base import AbstractCounterStore, AbstractRateLimiter
from app.adapters.storage.kv import (
    InMemoryKeyValueStore,
    KeyValueCounterStore,
    KeyValueRateLimiter,
)
from app.adapters.storage.sql import (
    SqlCounterStore,
    SqlRateLimiter,
    create_engine,
    init_schema,
)
from app.core.config import Settings
from app.core.errors import ValidationAppError

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("sql", "memory")


@dataclass
class StorageBundle:
    """Counter store and limiter built for one backend, plus its resources."""

    backend: str
    counter_store: AbstractCounterStore
    rate_limiter: AbstractRateLimiter
    engine: AsyncEngine | None = None

    @property
    def atomic(self) -> bool:
        return not self.rate_limiter.capabilities.degraded

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


async def create_storage(cfg: Settings) -> StorageBundle:
    """Instantiate the storage strategy selected by ``STORAGE_BACKEND``.

    Raises:
        ValidationAppError: If the backend name is unknown.
    """
    backend = cfg.storage.backend.lower()
    claps = cfg.claps

    if backend == "sql":
        engine = create_engine(cfg.storage.database_url, echo=cfg.storage.echo)
        if cfg.storage.create_schema:
            await init_schema(engine)
        bundle = StorageBundle(
            backend=backend,
            counter_store=SqlCounterStore(engine, timeout_seconds=cfg.storage.timeout_seconds),
            rate_limiter=SqlRateLimiter(
                engine,
                limit=claps.max_per_client,
                window_ms=claps.window_ms,
                timeout_seconds=cfg.storage.timeout_seconds,
            ),
            engine=engine,
        )
    elif backend == "memory":
        kv = InMemoryKeyValueStore()
        bundle = StorageBundle(
            backend=backend,
            counter_store=KeyValueCounterStore(
                kv,
                timeout_seconds=cfg.storage.timeout_seconds,
                cas_retries=cfg.storage.cas_retries,
            ),
            rate_limiter=KeyValueRateLimiter(
                kv,
                limit=claps.max_per_client,
                window_ms=claps.window_ms,
                retention_ms=claps.effective_retention_ms,
                timeout_seconds=cfg.storage.timeout_seconds,
            ),
        )
    else:
        raise ValidationAppError(
            code="storage_unknown_backend",
            message=(
                f"Unknown storage backend: '{backend}'. "
                f"Supported backends: {', '.join(SUPPORTED_BACKENDS)}"
            ),
        )

    if bundle.atomic:
        logger.info("storage.ready", extra={"backend": backend, "atomic": True})
    else:
        logger.warning(
            "storage.degraded_mode",
            extra={
                "backend": backend,
                "atomic": False,
                "compare_and_swap": bundle.rate_limiter.capabilities.compare_and_swap,
                "hint": "Rate limiting is best-effort and may over- or under-admit under concurrency",
            },
        )
    return bundle
