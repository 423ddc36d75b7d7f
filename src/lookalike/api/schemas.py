"""Pydantic request/response schemas for the Lookalike API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class MatchResponse(BaseModel):
    """Outcome of comparing a face against the reference set."""

    matched: bool
    name: str | None = Field(default=None, description="Name of the matched reference")
    image: str | None = Field(default=None, description="Image of the matched reference")
    index: int | None = Field(default=None, description="Position of the matched reference in the set")
    distance: float | None = Field(default=None, description="Euclidean distance to the matched reference")
    threshold: float
    reason: Literal["no_face", "above_threshold", "no_references"] | None = Field(
        default=None, description="Why nothing matched; null on a match"
    )


class MatchEmbeddingRequest(BaseModel):
    """A precomputed face embedding to match."""

    embedding: list[float] = Field(min_length=1)
    threshold: float | None = Field(default=None, ge=0.0, allow_inf_nan=False)


class EmbeddingResponse(BaseModel):
    """The most prominent face in an image and its embedding."""

    x: float = Field(description="Relative bounding box x position (0.0-1.0)")
    y: float = Field(description="Relative bounding box y position (0.0-1.0)")
    width: float = Field(description="Relative bounding box width (0.0-1.0)")
    height: float = Field(description="Relative bounding box height (0.0-1.0)")
    score: float = Field(description="Detection confidence (0.0-1.0)")
    dim: int
    vector: list[float] = Field(description="L2-normalized face embedding")


class ReferenceInfo(BaseModel):
    index: int
    name: str
    image: str


class ReferencesResponse(BaseModel):
    """The reference set currently used for matching."""

    count: int
    dim: int | None
    references: list[ReferenceInfo]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    references_loaded: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'face_detection' or 'face_recognition'")
    status: str = Field(description="Model status: 'active', 'available', or 'requires_license'")
    license: str


class ModelsResponse(BaseModel):
    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
