from __future__ import annotations

from fastapi import APIRouter, Depends

from app.adapters.storage.factory import StorageBundle
from app.api.deps import get_storage
from app.schemas.claps import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
def health_check(storage: StorageBundle = Depends(get_storage)) -> HealthResponse:
    """Health check endpoint.

    Reports the configured storage backend and whether rate limiting is
    atomic or running in best-effort mode.
    """

    return HealthResponse(status="ok", storage=storage.backend, atomic=storage.atomic)
