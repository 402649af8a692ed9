"""Pydantic request/response schemas for the OvR Curator API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class VoteSchema(BaseModel):
    """One classifier's confidence for one label."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Gate decision for an uploaded image."""

    decision: Literal["accepted", "rejected"]
    label: str | None = Field(default=None, description="Winning label when accepted")
    confidence: float | None = None
    reason: str | None = Field(default=None, description="'multiple_winners' or 'no_winner' when rejected")
    threshold: float
    votes: list[VoteSchema]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    indexed_hashes: int


class ModelInfo(BaseModel):
    """Information about a discovered classifier."""

    name: str
    role: str = Field(description="'ensemble' or 'tie_break'")
    labels: list[str]
    status: str = Field(description="'active' or 'unused'")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class CurationRunRequest(BaseModel):
    """Optional overrides for a curation run; omitted values use the settings."""

    total_count: int | None = Field(default=None, ge=1)
    batch_size: int | None = Field(default=None, ge=1)
    max_retries: int | None = Field(default=None, ge=1)


class ProgressSchema(BaseModel):
    completed_batches: int
    total_batches: int
    elapsed_seconds: float
    remaining_seconds: float
    estimated_end: datetime


class CurationRunStatus(BaseModel):
    """State of the current or last curation run."""

    status: Literal["idle", "running", "finished", "failed"]
    error: str | None = None
    stats: dict[str, object]
    progress: ProgressSchema | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
