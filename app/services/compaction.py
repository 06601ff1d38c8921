"""Window compactor.

Deletes rate limit records whose window started before the retention cutoff,
one bounded batch at a time, until a batch comes back short. Runs on a timer
inside the application lifespan, or once from the command line:

    python -m app.services.compaction
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from app.adapters.storage.base import AbstractRateLimiter
from app.core.errors import StoreUnavailableError
from app.services.clap_service import current_time_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompactionReport:
    cutoff_ms: int
    deleted: int
    batches: int


class WindowCompactor:
    """Batch deletion of expired rate limit windows.

    Safe to run alongside request traffic: only windows older than the
    retention horizon are removed, and no live request references them.
    """

    def __init__(
        self,
        rate_limiter: AbstractRateLimiter,
        *,
        retention_ms: int,
        batch_size: int = 1000,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        if retention_ms < rate_limiter.window_ms:
            raise ValueError("retention_ms must cover at least one window")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._rate_limiter = rate_limiter
        self._retention_ms = retention_ms
        self._batch_size = batch_size
        self._clock_ms = clock_ms or current_time_ms

    async def run_once(self, *, now_ms: int | None = None) -> CompactionReport:
        """Delete every expired window record.

        Raises:
            StoreUnavailableError: If the store fails mid-run. Batches already
                deleted stay deleted; the next run picks up the rest.
        """
        now_ms = self._clock_ms() if now_ms is None else now_ms
        cutoff = now_ms - self._retention_ms
        deleted = 0
        batches = 0

        while True:
            removed = await self._rate_limiter.delete_expired(cutoff, batch_size=self._batch_size)
            deleted += removed
            batches += 1
            if removed < self._batch_size:
                break

        logger.info(
            "compaction.completed",
            extra={"cutoff_ms": cutoff, "deleted": deleted, "batches": batches},
        )
        return CompactionReport(cutoff_ms=cutoff, deleted=deleted, batches=batches)

    async def run_forever(self, interval_seconds: float) -> None:
        """Run compaction every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.run_once()
            except StoreUnavailableError as exc:
                logger.warning(
                    "compaction.skipped",
                    extra={"reason": exc.code, "next_run_s": interval_seconds},
                )


async def _main() -> None:
    from app.adapters.storage.factory import create_storage
    from app.core.config import settings
    from app.core.logging import configure_logging

    configure_logging(settings.log)
    storage = await create_storage(settings)
    try:
        compactor = WindowCompactor(
            storage.rate_limiter,
            retention_ms=settings.claps.effective_retention_ms,
            batch_size=settings.claps.compaction_batch_size,
        )
        await compactor.run_once()
    finally:
        await storage.close()


if __name__ == "__main__":
    asyncio.run(_main())
