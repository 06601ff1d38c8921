"""Tests for slug validation."""

import pytest

from app.core.errors import ValidationAppError
from app.core.validation import MAX_SLUG_LENGTH, is_valid_slug, validate_slug


@pytest.mark.parametrize(
    "slug",
    ["hello-world", "2024.recap", "posts:intro", "don't-panic", "a", "a" * MAX_SLUG_LENGTH],
)
def test_accepts_valid_slugs(slug: str) -> None:
    assert validate_slug(slug) == slug


@pytest.mark.parametrize(
    "slug",
    ["", None, "-leading", ".leading", "Upper", "has space", "slash/inside", "émoji", "a" * (MAX_SLUG_LENGTH + 1)],
)
def test_rejects_invalid_slugs(slug) -> None:
    assert is_valid_slug(slug) is False


def test_error_carries_length_details() -> None:
    with pytest.raises(ValidationAppError) as exc_info:
        validate_slug("x" * 250)

    assert exc_info.value.code == "invalid_slug"
    assert exc_info.value.details == {"max_length": 200, "actual_length": 250}
