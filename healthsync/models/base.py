"""Shared Pydantic base models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class HealthSyncBase(BaseModel):
    """Base model with shared config for all API schemas.

    ``from_attributes`` lets routes return engine dataclasses directly.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class PaginationParams(BaseModel):
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1, le=200)


class ErrorDetail(BaseModel):
    detail: str
