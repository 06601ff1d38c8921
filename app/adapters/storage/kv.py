"""Key-value storage strategy (best-effort fallback).

Models an eventually-consistent key-value store that offers plain get/put
and, optionally, compare-and-swap on a per-key version. There is no
conditional upsert across operations, so:

- counter increments retry a compare-and-swap until it lands, which never
  loses an increment because a failed swap wrote nothing. Counters therefore
  require a store with compare-and-swap;
- admissions are a read-check-write. With compare-and-swap a lost race rejects
  the request (under-admits); without it, concurrent requests from one client
  may both pass the check (over-admits) and one limiter update may be lost.

This strategy is degraded by construction and the application logs so at
startup. Use the relational strategy wherever it is available.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from app.adapters.storage.base import (
    AbstractCounterStore,
    AbstractRateLimiter,
    StoreCapabilities,
)
from app.core.errors import StoreUnavailableError
from app.core.logging import short_token

logger = logging.getLogger(__name__)

COUNTER_PREFIX = "claps:"
WINDOW_PREFIX = "rl:"


@dataclass(frozen=True)
class VersionedValue:
    """Stored integer with the version it was read at."""

    value: int
    version: int
    expires_at: float | None = None


class AbstractKeyValueStore(ABC):
    """Minimal async key-value interface."""

    supports_cas: bool = False

    @abstractmethod
    async def get(self, key: str) -> VersionedValue | None:
        raise NotImplementedError

    @abstractmethod
    async def put(self, key: str, value: int, *, ttl_seconds: float | None = None) -> None:
        raise NotImplementedError

    async def compare_and_swap(
        self,
        key: str,
        value: int,
        *,
        expected_version: int | None,
        ttl_seconds: float | None = None,
    ) -> bool:
        """Write only if the key is still at ``expected_version`` (None: absent)."""
        raise NotImplementedError("store does not support compare-and-swap")

    @abstractmethod
    async def scan_keys(self, prefix: str) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, keys: list[str]) -> int:
        raise NotImplementedError


class InMemoryKeyValueStore(AbstractKeyValueStore):
    """Per-process key-value store with versions and optional TTLs.

    Notes:
        Per-process only: running multiple workers gives each its own data.
        Thread-safe: every operation runs under one lock.
    """

    def __init__(
        self,
        *,
        supports_cas: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.supports_cas = supports_cas
        self._clock = clock
        self._lock = threading.RLock()
        self._data: dict[str, VersionedValue] = {}

    def _live(self, key: str) -> VersionedValue | None:
        item = self._data.get(key)
        if item is None:
            return None
        if item.expires_at is not None and item.expires_at <= self._clock():
            del self._data[key]
            return None
        return item

    def _expiry(self, ttl_seconds: float | None) -> float | None:
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    async def get(self, key: str) -> VersionedValue | None:
        with self._lock:
            return self._live(key)

    async def put(self, key: str, value: int, *, ttl_seconds: float | None = None) -> None:
        with self._lock:
            current = self._live(key)
            version = current.version + 1 if current else 1
            self._data[key] = VersionedValue(value, version, self._expiry(ttl_seconds))

    async def compare_and_swap(
        self,
        key: str,
        value: int,
        *,
        expected_version: int | None,
        ttl_seconds: float | None = None,
    ) -> bool:
        if not self.supports_cas:
            raise NotImplementedError("store does not support compare-and-swap")
        with self._lock:
            current = self._live(key)
            current_version = current.version if current else None
            if current_version != expected_version:
                return False
            self._data[key] = VersionedValue(
                value, (current_version or 0) + 1, self._expiry(ttl_seconds)
            )
            return True

    async def scan_keys(self, prefix: str) -> list[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k)]

    async def delete(self, keys: list[str]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
        return removed


def _window_key(client_token: str, resource_id: str, window_start: int) -> str:
    return f"{WINDOW_PREFIX}{window_start}:{client_token}:{resource_id}"


def _window_start_from_key(key: str) -> int:
    return int(key[len(WINDOW_PREFIX):].split(":", 1)[0])


class _KvStore:
    """Shared timeout and error translation for key-value calls."""

    def __init__(self, kv: AbstractKeyValueStore, *, timeout_seconds: float) -> None:
        self._kv = kv
        self._timeout = timeout_seconds
        self.capabilities = StoreCapabilities(
            atomic_upsert=False, compare_and_swap=kv.supports_cas
        )

    async def _call(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "storage.unavailable",
                extra={"backend": "kv", "operation": operation, "reason": "timeout"},
            )
            raise StoreUnavailableError(
                code="store_timeout",
                message="The counter store did not respond in time",
                details={"operation": operation, "backend": "kv"},
            ) from exc
        except (ConnectionError, OSError) as exc:
            logger.error(
                "storage.unavailable",
                extra={"backend": "kv", "operation": operation, "reason": type(exc).__name__},
            )
            raise StoreUnavailableError(
                code="store_unavailable",
                message="The counter store is temporarily unavailable",
                details={"operation": operation, "backend": "kv"},
            ) from exc


class KeyValueCounterStore(_KvStore, AbstractCounterStore):
    """Counter kept as one integer per resource key."""

    def __init__(
        self,
        kv: AbstractKeyValueStore,
        *,
        timeout_seconds: float,
        cas_retries: int = 16,
    ) -> None:
        if not kv.supports_cas:
            raise ValueError("KeyValueCounterStore requires a store with compare-and-swap")
        if cas_retries < 1:
            raise ValueError("cas_retries must be >= 1")
        super().__init__(kv, timeout_seconds=timeout_seconds)
        self._cas_retries = cas_retries

    async def increment(self, resource_id: str, by: int, *, now_ms: int) -> int:
        if by < 1:
            raise ValueError("by must be >= 1")
        key = f"{COUNTER_PREFIX}{resource_id}"

        for attempt in range(1, self._cas_retries + 1):
            current = await self._call("counter.read", self._kv.get(key))
            total = (current.value if current else 0) + by
            swapped = await self._call(
                "counter.increment",
                self._kv.compare_and_swap(
                    key, total, expected_version=current.version if current else None
                ),
            )
            if swapped:
                return total
            logger.debug(
                "storage.cas_conflict",
                extra={"backend": "kv", "operation": "counter.increment", "attempt": attempt},
            )

        raise StoreUnavailableError(
            code="store_contention",
            message="The counter is under heavy contention, try again",
            details={"operation": "counter.increment", "backend": "kv"},
        )

    async def read(self, resource_id: str) -> int:
        current = await self._call("counter.read", self._kv.get(f"{COUNTER_PREFIX}{resource_id}"))
        return current.value if current else 0


class KeyValueRateLimiter(_KvStore, AbstractRateLimiter):
    """Best-effort fixed-window limiter over a key-value store.

    Window records are written with a TTL equal to the retention horizon, so
    stores that expire keys compact themselves; ``delete_expired`` covers
    stores that do not.
    """

    def __init__(
        self,
        kv: AbstractKeyValueStore,
        *,
        limit: int,
        window_ms: int,
        retention_ms: int,
        timeout_seconds: float,
    ) -> None:
        _KvStore.__init__(self, kv, timeout_seconds=timeout_seconds)
        AbstractRateLimiter.__init__(self, limit=limit, window_ms=window_ms)
        self._ttl_seconds = retention_ms / 1000

    async def _conditional_add(
        self,
        client_token: str,
        resource_id: str,
        window_start: int,
        amount: int,
        now_ms: int,
    ) -> int | None:
        key = _window_key(client_token, resource_id, window_start)
        current = await self._call("limiter.read", self._kv.get(key))
        total = (current.value if current else 0) + amount
        if total > self._limit:
            return None

        if not self._kv.supports_cas:
            await self._call("limiter.try_admit", self._kv.put(key, total, ttl_seconds=self._ttl_seconds))
            return total

        swapped = await self._call(
            "limiter.try_admit",
            self._kv.compare_and_swap(
                key,
                total,
                expected_version=current.version if current else None,
                ttl_seconds=self._ttl_seconds,
            ),
        )
        if not swapped:
            # Lost race: reject instead of repeating the conditional write.
            logger.info(
                "limiter.cas_conflict_rejected",
                extra={"client_token": short_token(client_token), "resource_id": resource_id},
            )
            return None
        return total

    async def delete_expired(self, cutoff_ms: int, *, batch_size: int) -> int:
        keys = await self._call("limiter.scan", self._kv.scan_keys(WINDOW_PREFIX))
        expired = sorted(
            (k for k in keys if _window_start_from_key(k) < cutoff_ms),
            key=_window_start_from_key,
        )[:batch_size]
        if not expired:
            return 0
        return await self._call("limiter.delete_expired", self._kv.delete(expired))
