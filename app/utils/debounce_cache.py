"""Bounded in-memory debounce cache.

Remembers when each (client token, resource) pair last passed the debounce
gate. Advisory only: per-process, lost on restart and not shared between
instances. Entries expire after the debounce interval and the least recently
used ones are evicted past ``max_entries``.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

from app.core.logging import short_token

logger = logging.getLogger(__name__)


def build_debounce_key(client_token: str, resource_id: str) -> str:
    return f"{client_token}:{resource_id}"


class DebounceCache:
    """Thread-safe debounce tracker with TTL and LRU eviction.

    Attributes:
        interval_ms: Minimum spacing between two passes of the same key.
        max_entries: Maximum number of tracked keys.
    """

    def __init__(self, interval_ms: int = 500, max_entries: int = 10_000) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._interval_ms = interval_ms
        self._max_entries = max_entries
        self._last_seen: OrderedDict[str, int] = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._passes = 0
        self._evictions = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"DebounceCache(interval_ms={self._interval_ms}, max_entries={self._max_entries}, "
            f"size={len(self._last_seen)}, hits={self._hits}, passes={self._passes}, "
            f"evictions={self._evictions})"
        )

    def check_and_mark(self, key: str, now_ms: int) -> bool:
        """Record a pass for ``key`` unless one happened within the interval.

        Returns:
            True if the request may proceed, False if it came too fast.
        """

        if self._interval_ms <= 0:
            return True

        with self._lock:
            last = self._last_seen.get(key)
            if last is not None and now_ms - last < self._interval_ms:
                self._hits += 1
                logger.debug("debounce.hit", extra={"debounce_key": short_token(key)})
                return False

            self._evict_expired_locked(now_ms)
            self._last_seen[key] = now_ms
            self._last_seen.move_to_end(key)
            self._evict_if_over_capacity_locked()
            self._passes += 1
            return True

    def retry_after_ms(self, key: str, now_ms: int) -> int:
        """Milliseconds until ``key`` may pass again (0 if it may pass now)."""

        with self._lock:
            last = self._last_seen.get(key)
        if last is None:
            return 0
        return max(0, self._interval_ms - (now_ms - last))

    def clear(self) -> None:
        with self._lock:
            self._last_seen.clear()
            self._hits = 0
            self._passes = 0
            self._evictions = 0

    def stats(self) -> dict[str, int]:
        """Return lightweight counters without exposing keys."""

        with self._lock:
            return {
                "interval_ms": self._interval_ms,
                "max_entries": self._max_entries,
                "entries": len(self._last_seen),
                "hits": self._hits,
                "passes": self._passes,
                "evictions": self._evictions,
            }

    def _evict_expired_locked(self, now_ms: int) -> None:
        # Insertion order is refresh order, so expired keys sit at the front.
        while self._last_seen:
            key, seen = next(iter(self._last_seen.items()))
            if now_ms - seen < self._interval_ms:
                break
            self._last_seen.popitem(last=False)
            self._evictions += 1

    def _evict_if_over_capacity_locked(self) -> None:
        while len(self._last_seen) > self._max_entries:
            self._last_seen.popitem(last=False)
            self._evictions += 1
