"""Pydantic schemas for clap requests and responses."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ClapRequest(BaseModel):
    """Body of an increment request.

    ``count`` is untyped: anything the client sends is clamped by
    the service, and unusable values count as a single clap.
    """

    count: Any = Field(
        default=1,
        description="Claps to add; floored and clamped to [1, max per request].",
    )


class ClapCountResponse(BaseModel):
    """Current clap total for a resource."""

    count: int = Field(..., ge=0, description="Total claps recorded for the slug.")


class ClapIncrementResponse(ClapCountResponse):
    """Result of an accepted increment."""

    success: bool = Field(True, description="Always true for accepted increments.")


class HealthResponse(BaseModel):
    status: str = Field("ok", description="Liveness indicator.")
    storage: str = Field(..., description="Configured storage backend.")
    atomic: bool = Field(
        ..., description="False when rate limiting runs in best-effort mode."
    )
