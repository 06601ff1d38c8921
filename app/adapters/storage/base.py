"""Counter store and rate limiter interfaces.

The accounting service depends on these abstractions (not the concrete
backends) so the relational and key-value strategies stay interchangeable.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class StoreCapabilities:
    """What a backend guarantees under concurrency.

    Attributes:
        atomic_upsert: Conditional insert-or-update is one indivisible
            operation, so admission can never overshoot the ceiling.
        compare_and_swap: Writes can be guarded by a version check.
    """

    atomic_upsert: bool
    compare_and_swap: bool

    @property
    def degraded(self) -> bool:
        return not self.atomic_upsert


@dataclass(frozen=True)
class AdmissionResult:
    """Result of a rate limiter admission attempt.

    Attributes:
        admitted: Whether the increment was recorded against the window.
        limit: Ceiling per client, resource and window.
        remaining: Units left in the window after this attempt, when known.
        window_start: Start of the fixed window, epoch milliseconds.
        reset_at: End of the fixed window, epoch milliseconds.
        retry_after_seconds: Suggested wait when rejected.
    """

    admitted: bool
    limit: int
    remaining: int | None
    window_start: int
    reset_at: int
    retry_after_seconds: int | None


def window_start_for(now_ms: int, window_ms: int) -> int:
    """Return ``floor(now / W) * W``."""

    return (now_ms // window_ms) * window_ms


class AbstractRateLimiter(ABC):
    """Fixed-window limiter keyed by client token, resource and window."""

    capabilities: StoreCapabilities

    def __init__(self, *, limit: int, window_ms: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")
        self._limit = limit
        self._window_ms = window_ms

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_ms(self) -> int:
        return self._window_ms

    def _build_result(
        self,
        *,
        admitted: bool,
        now_ms: int,
        window_start: int,
        count: int | None,
    ) -> AdmissionResult:
        reset_at = window_start + self._window_ms
        remaining = None if count is None else max(0, self._limit - count)
        retry_after = None
        if not admitted:
            retry_after = max(1, int(math.ceil((reset_at - now_ms) / 1000)))
        return AdmissionResult(
            admitted=admitted,
            limit=self._limit,
            remaining=remaining,
            window_start=window_start,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    async def try_admit(
        self,
        client_token: str,
        resource_id: str,
        amount: int,
        *,
        now_ms: int,
    ) -> AdmissionResult:
        """Record ``amount`` against the current window if it fits under the limit.

        The check and the write happen as one unit; a rejected attempt leaves
        the stored count untouched.

        Raises:
            ValueError: If the token is empty or the amount is not positive.
            StoreUnavailableError: If the backing store fails.
        """
        if not client_token:
            raise ValueError("client_token must be a non-empty string")
        if amount < 1:
            raise ValueError("amount must be >= 1")

        window_start = window_start_for(now_ms, self._window_ms)
        if amount > self._limit:
            return self._build_result(
                admitted=False, now_ms=now_ms, window_start=window_start, count=None
            )

        count = await self._conditional_add(
            client_token, resource_id, window_start, amount, now_ms
        )
        return self._build_result(
            admitted=count is not None,
            now_ms=now_ms,
            window_start=window_start,
            count=count,
        )

    @abstractmethod
    async def _conditional_add(
        self,
        client_token: str,
        resource_id: str,
        window_start: int,
        amount: int,
        now_ms: int,
    ) -> int | None:
        """Add ``amount`` to the window record if the sum stays within the limit.

        Returns:
            The post-update count when written, or None when rejected.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete_expired(self, cutoff_ms: int, *, batch_size: int) -> int:
        """Delete up to ``batch_size`` records with ``window_start < cutoff_ms``.

        Returns:
            Number of records removed.
        """
        raise NotImplementedError


class AbstractCounterStore(ABC):
    """Per-resource monotonically increasing counter."""

    capabilities: StoreCapabilities

    @abstractmethod
    async def increment(self, resource_id: str, by: int, *, now_ms: int) -> int:
        """Atomically add ``by`` to the counter, creating it if absent.

        Returns:
            The counter value after the increment.
        """
        raise NotImplementedError

    @abstractmethod
    async def read(self, resource_id: str) -> int:
        """Return the current count, 0 when the resource was never clapped."""
        raise NotImplementedError
