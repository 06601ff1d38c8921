from __future__ import annotations

from app.api.routes.claps import router as claps_router
from app.api.routes.health import router as health_router

__all__ = ["claps_router", "health_router"]
