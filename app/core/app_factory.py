from __future__ import annotations

"""Application factory for the claps service.

Builds the FastAPI app and owns the lifespan: storage is created on startup,
the window compactor runs as a background task, and both are torn down on
shutdown.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.adapters.storage.factory import create_storage
from app.api.routes import claps_router, health_router
from app.core.config import Settings, settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.openapi import apply_openapi_customizations
from app.services.clap_service import ClapService
from app.services.compaction import WindowCompactor
from app.utils.debounce_cache import DebounceCache

logger = logging.getLogger(__name__)


def _lifespan(cfg: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        storage = await create_storage(cfg)
        app.state.storage = storage
        app.state.clap_service = ClapService(
            counter_store=storage.counter_store,
            rate_limiter=storage.rate_limiter,
            debounce=DebounceCache(
                interval_ms=cfg.claps.debounce_ms,
                max_entries=cfg.claps.debounce_max_entries,
            ),
            salt=cfg.claps.ip_hash_salt,
            max_per_request=cfg.claps.max_per_request,
        )
        if not cfg.claps.ip_hash_salt:
            logger.warning(
                "identity.unsalted",
                extra={"hint": "Set CLAPS_IP_HASH_SALT so client tokens cannot be correlated"},
            )

        compaction_task: asyncio.Task | None = None
        if cfg.claps.compaction_enabled:
            compactor = WindowCompactor(
                storage.rate_limiter,
                retention_ms=cfg.claps.effective_retention_ms,
                batch_size=cfg.claps.compaction_batch_size,
            )
            compaction_task = asyncio.create_task(
                compactor.run_forever(cfg.claps.compaction_interval_seconds),
                name="window-compactor",
            )

        try:
            yield
        finally:
            if compaction_task is not None:
                compaction_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await compaction_task
            await storage.close()

    return lifespan


def create_app(cfg: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        cfg: Settings to build from; defaults to the environment-loaded ones.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    cfg = cfg or settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    app = FastAPI(
        title="Claps API",
        description=(
            "Counts claps per slug with a per-client, per-window allowance. "
            "Increments are admitted and counted atomically; rate limited and "
            "debounced requests are answered with 429, storage outages with 503."
        ),
        version="0.1.0",
        lifespan=_lifespan(cfg),
    )
    app.state.settings = cfg

    app.middleware("http")(request_id_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=sorted(cfg.app.allowed_origin_set),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
        max_age=86400,
    )

    setup_exception_handlers(app)

    app.include_router(claps_router)
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
