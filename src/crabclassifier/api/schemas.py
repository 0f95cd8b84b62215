"""Pydantic request/response schemas for the crab classifier API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ModelStatusResponse(BaseModel):
    """Model load state and retry affordance."""

    state: str = Field(description="One of 'idle', 'loading', 'loaded', 'failed'")
    progress: int = Field(ge=0, le=100)
    error: str | None = None
    retry_count: int
    retries_left: int
    can_retry: bool
    backend: str | None = None
    format: str | None = Field(default=None, description="Artifact format: 'graph' or 'layers'")


class ImageResponse(BaseModel):
    """An uploaded image reference."""

    ref: str
    content_type: str
    size: int


class ClassificationResponse(BaseModel):
    """A crab gender prediction."""

    label: str = Field(description="'Male' or 'Female'")
    confidence: float = Field(ge=0.0, le=100.0, description="Percentage, one decimal place")
    confidence_level: str
    alternative_label: str
    alternative_confidence: float = Field(ge=0.0, le=100.0)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    loader_state: str
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
