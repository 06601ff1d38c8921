"""Clap accounting service.

Sequences one increment request: client identity hashing, debounce,
amount clamping, rate limiter admission and finally the counter update. The
counter is only touched after a successful admission, and the admission and
the counter update run shielded from caller cancellation so a dropped
connection cannot leave a request half-applied.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import Any

from app.adapters.storage.base import (
    AbstractCounterStore,
    AbstractRateLimiter,
    AdmissionResult,
)
from app.core.errors import InconsistentStateError, StoreUnavailableError
from app.core.identity import hash_client_address
from app.core.logging import short_token
from app.utils.debounce_cache import DebounceCache, build_debounce_key

logger = logging.getLogger(__name__)


class ClapStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    RATE_LIMITED = "rate_limited"
    TOO_FAST = "too_fast"


@dataclass(frozen=True)
class ClapOutcome:
    """Outcome of one increment request.

    Attributes:
        status: Accepted, rate limited or debounced.
        amount: Clamped amount that was (or would have been) applied.
        total: New counter total when accepted.
        retry_after_seconds: Suggested wait when not accepted.
        admission: Limiter result, absent when the debounce gate rejected.
    """

    status: ClapStatus
    amount: int
    total: int | None = None
    retry_after_seconds: int | None = None
    admission: AdmissionResult | None = None

    @property
    def accepted(self) -> bool:
        return self.status is ClapStatus.ACCEPTED


def clamp_amount(requested: Any, max_per_request: int) -> int:
    """Normalize a client-supplied amount to ``[1, max_per_request]``.

    Numbers (and numeric strings) are floored; anything missing, non-numeric
    or non-finite counts as 1.

    Examples:
        >>> clamp_amount(3.7, 10)
        3
        >>> clamp_amount(999, 10)
        10
        >>> clamp_amount(None, 10)
        1
    """
    try:
        value = float(requested)
    except (TypeError, ValueError, OverflowError):
        return 1
    if not math.isfinite(value):
        return 1
    return min(max(math.floor(value), 1), max_per_request)


def current_time_ms() -> int:
    return time.time_ns() // 1_000_000


class ClapService:
    """Accounting coordinator for clap reads and increments."""

    def __init__(
        self,
        *,
        counter_store: AbstractCounterStore,
        rate_limiter: AbstractRateLimiter,
        debounce: DebounceCache,
        salt: str,
        max_per_request: int,
    ) -> None:
        if max_per_request < 1:
            raise ValueError("max_per_request must be >= 1")
        self._counter_store = counter_store
        self._rate_limiter = rate_limiter
        self._debounce = debounce
        self._salt = salt
        self._max_per_request = max_per_request

    @property
    def degraded(self) -> bool:
        return self._rate_limiter.capabilities.degraded

    async def read(self, resource_id: str) -> int:
        return await self._counter_store.read(resource_id)

    async def increment(
        self,
        resource_id: str,
        raw_address: str | None,
        requested_amount: Any = 1,
        *,
        now_ms: int | None = None,
    ) -> ClapOutcome:
        """Apply one clap request.

        Args:
            resource_id: Validated slug.
            raw_address: Client address from the edge; None uses the sentinel.
            requested_amount: Untrusted amount from the request body.
            now_ms: Request time in epoch milliseconds (defaults to now).

        Returns:
            ClapOutcome describing acceptance or the rejection reason.

        Raises:
            StoreUnavailableError: If the limiter or counter store fails
                before anything was recorded.
            InconsistentStateError: If the counter update failed after the
                admission was recorded.
        """
        now_ms = current_time_ms() if now_ms is None else now_ms
        client_token = hash_client_address(raw_address, self._salt)
        amount = clamp_amount(requested_amount, self._max_per_request)
        log_ctx = {"client_token": short_token(client_token), "resource_id": resource_id}

        debounce_key = build_debounce_key(client_token, resource_id)
        if not self._debounce.check_and_mark(debounce_key, now_ms):
            wait_ms = self._debounce.retry_after_ms(debounce_key, now_ms)
            logger.info("claps.too_fast", extra=log_ctx)
            return ClapOutcome(
                status=ClapStatus.TOO_FAST,
                amount=amount,
                retry_after_seconds=max(1, math.ceil(wait_ms / 1000)),
            )

        # Shielded: a cancelled caller must not split admission from counting.
        return await asyncio.shield(
            self._admit_and_count(client_token, resource_id, amount, now_ms, log_ctx)
        )

    async def _admit_and_count(
        self,
        client_token: str,
        resource_id: str,
        amount: int,
        now_ms: int,
        log_ctx: dict[str, Any],
    ) -> ClapOutcome:
        try:
            admission = await self._rate_limiter.try_admit(
                client_token, resource_id, amount, now_ms=now_ms
            )
        except StoreUnavailableError as exc:
            if exc.code == "store_timeout":
                # The write may have committed after the deadline; the counter is not touched.
                logger.warning(
                    "claps.admission_uncertain",
                    extra={**log_ctx, "amount": amount, "cause": exc.code},
                )
            raise
        if not admission.admitted:
            logger.info(
                "claps.rate_limited",
                extra={**log_ctx, "amount": amount, "limit": admission.limit},
            )
            return ClapOutcome(
                status=ClapStatus.RATE_LIMITED,
                amount=amount,
                retry_after_seconds=admission.retry_after_seconds,
                admission=admission,
            )

        try:
            total = await self._counter_store.increment(resource_id, amount, now_ms=now_ms)
        except StoreUnavailableError as exc:
            logger.error(
                "claps.inconsistent_state",
                extra={
                    **log_ctx,
                    "amount": amount,
                    "window_start": admission.window_start,
                    "cause": exc.code,
                },
            )
            raise InconsistentStateError(
                code="inconsistent_state",
                message="The clap was admitted but could not be counted",
                details={"resource_id": resource_id, "amount": amount},
            ) from exc

        logger.info(
            "claps.admitted",
            extra={
                **log_ctx,
                "amount": amount,
                "total": total,
                "remaining": admission.remaining,
            },
        )
        return ClapOutcome(
            status=ClapStatus.ACCEPTED,
            amount=amount,
            total=total,
            admission=admission,
        )
