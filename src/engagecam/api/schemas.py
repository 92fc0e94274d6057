"""Pydantic request/response schemas for the EngageCam API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Prediction(BaseModel):
    """Confidence for one class in a single frame."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)
    percentage: int = Field(description="Confidence as a rounded whole percentage")


class TallyResponse(BaseModel):
    """Running tally of per-frame predictions."""

    tallies: dict[str, int] = Field(description="Frames counted per class label, in label order")
    max_category: str | None
    summary: str
    frames_seen: int
    threshold: float = Field(description="Minimum percentage a prediction needs to be counted")
    mode: str = Field(description="Tally mode: 'top' or 'all'")


class PredictResponse(BaseModel):
    """Result of classifying one frame."""

    predictions: list[Prediction]
    labels: list[str] = Field(description="Display lines, e.g. 'focused: 87%'")
    incremented: list[str]
    tally: TallyResponse


class ModelStatus(BaseModel):
    """The active model."""

    name: str
    labels: list[str]
    total_classes: int
    image_size: int
    source: str
    source_kind: str = Field(description="'local', 'huggingface' or 'upload'")
    loaded_at: float


class SessionStatus(BaseModel):
    """State of the server-side webcam session."""

    running: bool
    frames: int
    last_error: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    device: str = Field(description="Inference device: cpu, cuda or openvino")
    gpu: bool
    model_loaded: bool
    concurrent_requests: int
    queue_depth: int
    session: SessionStatus


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
