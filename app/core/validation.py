"""Resource identifier validation.

Slugs are validated at the HTTP boundary so malformed input never reaches
the accounting service or a store.
"""

from __future__ import annotations

import logging
import re

from app.core.errors import ValidationAppError

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._:'\-]*$")
MAX_SLUG_LENGTH = 200


def is_valid_slug(slug: str | None) -> bool:
    if not slug or len(slug) > MAX_SLUG_LENGTH:
        return False
    return SLUG_PATTERN.fullmatch(slug) is not None


def validate_slug(slug: str | None) -> str:
    """Return the slug unchanged if valid.

    Raises:
        ValidationAppError: If the slug is empty, too long or contains
            characters outside ``[a-z0-9._:'-]``.
    """

    if is_valid_slug(slug):
        return slug  # type: ignore[return-value]

    length = len(slug) if slug else 0
    logger.info("validation.invalid_slug", extra={"slug_length": length})
    raise ValidationAppError(
        code="invalid_slug",
        message="Invalid slug",
        details={"max_length": MAX_SLUG_LENGTH, "actual_length": length},
    )
