"""Storage adapters for counters and rate limit windows.

Two strategies implement the same interfaces: an atomic relational backend
(SQLAlchemy) and a best-effort key-value backend. The service layer depends on
the abstractions in ``base`` only.
"""

from app.adapters.storage.base import (
    AbstractCounterStore,
    AbstractRateLimiter,
    AdmissionResult,
    StoreCapabilities,
    window_start_for,
)
from app.adapters.storage.factory import StorageBundle, create_storage

__all__ = [
    "AbstractCounterStore",
    "AbstractRateLimiter",
    "AdmissionResult",
    "StorageBundle",
    "StoreCapabilities",
    "create_storage",
    "window_start_for",
]
