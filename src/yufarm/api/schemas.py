"""Pydantic request/response schemas for the YuFarm API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from yufarm.ml.diseases import DetectionResult, DiseaseRecord
    from yufarm.session import DetectionSession


class DiseaseInfo(BaseModel):
    """Reference entry for one disease class."""

    index: int = Field(ge=0)
    label: str
    local_name: str
    cause: str
    solution: str

    @classmethod
    def from_record(cls, index: int, record: DiseaseRecord) -> DiseaseInfo:
        return cls(
            index=index,
            label=record.label,
            local_name=record.local_name,
            cause=record.cause,
            solution=record.solution,
        )


class DiseasesResponse(BaseModel):
    """Response for the disease table endpoint."""

    diseases: list[DiseaseInfo]


class Detection(BaseModel):
    """A resolved classifier prediction."""

    index: int
    label: str
    local_name: str
    cause: str
    solution: str
    confidence: float = Field(description="Raw score of the predicted class, not renormalized")

    @classmethod
    def from_result(cls, result: DetectionResult) -> Detection:
        return cls(
            index=result.index,
            label=result.label,
            local_name=result.local_name,
            cause=result.cause,
            solution=result.solution,
            confidence=result.confidence,
        )


class ImageInfo(BaseModel):
    """Metadata of the image currently held by a session."""

    source: str = Field(description="Acquisition path: 'file', 'camera', or 'gallery'")
    width: int
    height: int


class SessionResponse(BaseModel):
    """Observable state of one detection session."""

    id: str
    state: str = Field(
        description="One of idle, model_loading, model_failed, awaiting_image, "
        "image_selected, detecting, result_ready, detection_failed"
    )
    image: ImageInfo | None = None
    result: Detection | None = None
    error: str | None = None

    @classmethod
    def from_session(cls, session: DetectionSession) -> SessionResponse:
        image = session.image
        result = session.result
        return cls(
            id=session.id,
            state=session.state.value,
            image=None
            if image is None
            else ImageInfo(source=image.source.value, width=image.width, height=image.height),
            result=None if result is None else Detection.from_result(result),
            error=session.error,
        )


class CaptureRequest(BaseModel):
    """Result of a camera or gallery capture performed on the device."""

    source: Literal["camera", "gallery"]
    data_url: str | None = Field(default=None, description="Base64 data: URL; null when the user cancelled")


class ModelStatus(BaseModel):
    """Classifier readiness."""

    state: str = Field(description="Model state: 'idle', 'loading', 'ready', or 'failed'")
    name: str | None = None
    error: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model: ModelStatus
    sessions: int
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
