"""Client identity hashing.

A client is identified by a salted SHA-256 digest of its network address.
The digest is the rate limiter's partition key; raw addresses are never stored
or logged.
"""

from __future__ import annotations

import hashlib

# Shared partition for callers whose address is unknown
SENTINEL_ADDRESS = "0.0.0.0"


def hash_client_address(raw_address: str | None, salt: str) -> str:
    """Derive a stable, non-reversible client token.

    Args:
        raw_address: Address presented by the edge, already trusted. Missing or
            blank addresses fall back to ``SENTINEL_ADDRESS``.
        salt: Deployment secret; different salts yield unlinkable tokens.

    Returns:
        Hex-encoded SHA-256 digest of ``salt + ":" + address``.
    """

    address = (raw_address or "").strip() or SENTINEL_ADDRESS
    return hashlib.sha256(f"{salt}:{address}".encode("utf-8")).hexdigest()
