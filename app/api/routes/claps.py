from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.deps import (
    get_clap_service,
    get_client_address,
    get_settings,
    require_allowed_origin,
)
from app.core.config import Settings
from app.core.logging import get_request_id
from app.core.validation import validate_slug
from app.schemas.claps import ClapCountResponse, ClapIncrementResponse, ClapRequest
from app.services.clap_service import ClapOutcome, ClapService, ClapStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Claps"])

_REJECTION_MESSAGES = {
    ClapStatus.TOO_FAST: ("too_fast", "Too fast. Please slow down."),
    ClapStatus.RATE_LIMITED: (
        "rate_limited",
        "Rate limit exceeded. You have clapped too much for this post. Try again later.",
    ),
}


async def _read_clap_request(request: Request) -> ClapRequest:
    """Parse the optional JSON body; anything unreadable means one clap."""
    raw = await request.body()
    if not raw:
        return ClapRequest()
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return ClapRequest()
    if not isinstance(payload, dict):
        return ClapRequest()
    return ClapRequest(count=payload.get("count", 1))


def _rejection_response(outcome: ClapOutcome) -> JSONResponse:
    code, message = _REJECTION_MESSAGES[outcome.status]
    headers = {"Cache-Control": "no-store"}
    if outcome.retry_after_seconds is not None:
        headers["Retry-After"] = str(outcome.retry_after_seconds)
    if outcome.admission is not None:
        headers["X-RateLimit-Limit"] = str(outcome.admission.limit)
        headers["X-RateLimit-Reset"] = str(outcome.admission.reset_at // 1000)
    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": code,
                "message": message,
                "request_id": get_request_id(),
            }
        },
        headers=headers,
    )


@router.get("/claps/{slug}", response_model=ClapCountResponse)
async def read_claps(
    slug: str,
    service: ClapService = Depends(get_clap_service),
    cfg: Settings = Depends(get_settings),
) -> JSONResponse:
    """Return the clap total for a slug (0 if it was never clapped)."""
    validate_slug(slug)
    count = await service.read(slug)
    return JSONResponse(
        content=ClapCountResponse(count=count).model_dump(),
        headers={
            "Cache-Control": f"public, max-age={cfg.app.read_cache_max_age_seconds}"
        },
    )


@router.post(
    "/claps/{slug}",
    response_model=ClapIncrementResponse,
    responses={429: {"description": "Debounced or rate limited"}},
)
async def add_claps(
    slug: str,
    request: Request,
    service: ClapService = Depends(get_clap_service),
    cfg: Settings = Depends(get_settings),
) -> JSONResponse:
    """Add claps to a slug.

    Body (optional): ``{"count": <number>}``. The amount is clamped to the
    per-request maximum; the client's per-window allowance is enforced
    atomically before the total changes.

    Raises:
        ValidationAppError: 400 for malformed slugs.
        ForbiddenAppError: 403 when the Origin is not allowed.
        StoreUnavailableError: 503 when storage is down (retryable).
    """
    validate_slug(slug)
    require_allowed_origin(request, cfg)

    body = await _read_clap_request(request)
    outcome = await service.increment(
        slug,
        get_client_address(request, cfg),
        body.count,
    )
    if not outcome.accepted:
        return _rejection_response(outcome)

    return JSONResponse(
        content=ClapIncrementResponse(count=outcome.total or 0).model_dump(),
        headers={"Cache-Control": "no-store"},
    )
