"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class RespondBody(BaseModel):
    response_data: dict[str, Any]
    responded_by: str = Field(min_length=1)


class HealthStatus(BaseModel):
    status: str
    version: str
    subscribers: int
