"""Request-scoped dependencies for the HTTP layer."""

from __future__ import annotations

import logging

from fastapi import Depends, Request

from app.adapters.storage.factory import StorageBundle
from app.core.config import Settings
from app.core.errors import ForbiddenAppError
from app.services.clap_service import ClapService

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
    """Settings the running app was built with."""
    return request.app.state.settings


def get_clap_service(request: Request) -> ClapService:
    """Return the service built by the application lifespan."""
    return request.app.state.clap_service


def get_storage(request: Request) -> StorageBundle:
    return request.app.state.storage


def get_client_address(
    request: Request,
    cfg: Settings = Depends(get_settings),
) -> str | None:
    """Resolve the caller's address: edge header, then socket peer.

    Returns None when neither is available; the service then falls back to
    the shared sentinel partition.
    """
    header = cfg.app.client_ip_header
    if header:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    return request.client.host if request.client else None


def require_allowed_origin(
    request: Request,
    cfg: Settings = Depends(get_settings),
) -> None:
    """Reject increments from origins outside ``APP_ALLOWED_ORIGINS``.

    Raises:
        ForbiddenAppError: If the Origin header is missing or not allowed.
    """
    if not cfg.app.require_origin:
        return

    origin = request.headers.get("Origin")
    if origin and origin in cfg.app.allowed_origin_set:
        return

    logger.warning(
        "origin.rejected",
        extra={"origin_present": bool(origin), "request_path": request.url.path},
    )
    raise ForbiddenAppError(code="forbidden_origin", message="Forbidden")
