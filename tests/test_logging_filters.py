"""Tests for sensitive data filtering in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO

from app.core.identity import hash_client_address
from app.core.logging import JsonFormatter, SensitiveDataFilter, short_token


def _capturing_logger(name: str) -> tuple[logging.Logger, StringIO]:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger, stream


def test_sensitive_filter_redacts_client_addresses():
    """Ensure raw client addresses never reach the output."""

    logger, stream = _capturing_logger("test_address_redaction")

    logger.info(
        "claps.debug",
        extra={
            "raw_address": "203.0.113.7",
            "client_ip": "198.51.100.2",
            "safe_field": "visible",
        },
    )

    output = stream.getvalue()

    assert "203.0.113.7" not in output
    assert "198.51.100.2" not in output
    assert "[REDACTED]" in output
    assert "visible" in output


def test_sensitive_filter_redacts_salt_and_connection_string():
    """Ensure the hashing salt and database URL are redacted."""

    logger, stream = _capturing_logger("test_secret_redaction")

    logger.info(
        "storage.debug",
        extra={
            "ip_hash_salt": "deployment-secret",
            "database_url": "postgresql+asyncpg://user:pw@db/claps",
            "backend": "sql",
        },
    )

    output = stream.getvalue()

    assert "deployment-secret" not in output
    assert "user:pw" not in output
    assert "sql" in output


def test_sensitive_filter_allows_safe_fields():
    """Verify safe fields pass through unmodified."""

    logger, stream = _capturing_logger("test_safe_fields")

    logger.info(
        "claps.admitted",
        extra={
            "request_id": "req-123",
            "resource_id": "hello-world",
            "amount": 3,
            "remaining": 47,
        },
    )

    payload = json.loads(stream.getvalue())

    assert payload["request_id"] == "req-123"
    assert payload["resource_id"] == "hello-world"
    assert payload["remaining"] == 47
    assert "[REDACTED]" not in stream.getvalue()


def test_sensitive_filter_redacts_nested_dicts():
    """Ensure nested sensitive fields are redacted."""

    logger, stream = _capturing_logger("test_nested")

    logger.info(
        "request.debug",
        extra={
            "headers": {
                "cf-connecting-ip": "203.0.113.7",
                "user-agent": "pytest",
            },
        },
    )

    output = stream.getvalue()

    assert "203.0.113.7" not in output
    assert "[REDACTED]" in output
    assert "pytest" in output


def test_short_token_truncates_client_tokens():
    token = hash_client_address("203.0.113.7", "salt")

    shortened = short_token(token)

    assert len(shortened) == 16
    assert token.startswith(shortened)
