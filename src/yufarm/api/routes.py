"""API route definitions."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile, status

from yufarm.api.middleware import verify_api_key
from yufarm.api.schemas import (
    CaptureRequest,
    DiseaseInfo,
    DiseasesResponse,
    ErrorResponse,
    HealthResponse,
    ModelStatus,
    SessionResponse,
)
from yufarm.errors import ImageDecodeError, SessionStateError
from yufarm.ml.diseases import DISEASES
from yufarm.ml.image_source import ImageSource
from yufarm.ml.model_loader import ModelReadiness
from yufarm.session import SessionState

if TYPE_CHECKING:
    from yufarm.config import Settings
    from yufarm.ml.inference import InferencePool
    from yufarm.ml.model_loader import ModelLoader
    from yufarm.session import DetectionSession, SessionStore

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_SESSION_ERRORS = {
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
}
_MODEL_ERRORS = {**_SESSION_ERRORS, status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}}


class _PostedCapture:
    """Device capture whose photo was already taken on the client."""

    def __init__(self, data_url: str | None) -> None:
        self._data_url = data_url

    async def get_photo(self, source: ImageSource) -> str | None:
        return self._data_url


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_loader(request: Request) -> ModelLoader:
    loader: ModelLoader = request.app.state.model_loader
    return loader


def _get_session_store(request: Request) -> SessionStore:
    store: SessionStore = request.app.state.session_store
    return store


def _get_session(request: Request, session_id: str) -> DetectionSession:
    try:
        return _get_session_store(request).get(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc.args[0])) from None


def _conflict(exc: SessionStateError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def _unprocessable(exc: ImageDecodeError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


def _model_unavailable(detail: str | None) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=detail or "Classifier failed to load",
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health and classifier readiness."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    loader = _get_model_loader(request)
    model = loader.model
    return HealthResponse(
        status="degraded" if loader.state is ModelReadiness.FAILED else "ok",
        gpu=settings.device == "cuda",
        model=ModelStatus(
            state=loader.state.value,
            name=model.model_name if model is not None else None,
            error=str(loader.error) if loader.error is not None else None,
        ),
        sessions=len(_get_session_store(request)),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/diseases",
    response_model=DiseasesResponse,
    summary="List the disease reference table",
)
async def list_diseases() -> DiseasesResponse:
    """Return the five disease records in classifier output order."""
    return DiseasesResponse(diseases=[DiseaseInfo.from_record(i, record) for i, record in enumerate(DISEASES)])


@router.post(
    "/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Start a detection session",
)
async def create_session(request: Request) -> SessionResponse:
    """Create a session and begin waiting for the classifier."""
    try:
        session = _get_session_store(request).create()
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from None

    tasks: set[asyncio.Task[None]] = request.app.state.background_tasks
    task = asyncio.create_task(session.start())
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    # Let the session reach its first suspension point so the reported state is current
    await asyncio.sleep(0)
    return SessionResponse.from_session(session)


@router.get(
    "/sessions/{session_id}",
    response_model=SessionResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Get session state",
)
async def get_session(request: Request, session_id: str) -> SessionResponse:
    return SessionResponse.from_session(_get_session(request, session_id))


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Discard a session",
)
async def delete_session(request: Request, session_id: str) -> Response:
    _get_session(request, session_id)
    _get_session_store(request).remove(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/sessions/{session_id}/retry-model",
    response_model=SessionResponse,
    responses=_MODEL_ERRORS,
    summary="Retry a failed classifier load",
)
async def retry_model(request: Request, session_id: str) -> SessionResponse:
    session = _get_session(request, session_id)
    try:
        await session.retry_model()
    except SessionStateError as exc:
        raise _conflict(exc) from None
    if session.state is SessionState.MODEL_FAILED:
        raise _model_unavailable(session.error)
    return SessionResponse.from_session(session)


@router.post(
    "/sessions/{session_id}/image",
    response_model=SessionResponse,
    responses={**_SESSION_ERRORS, status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse}},
    summary="Select an image from an uploaded file",
)
async def upload_image(request: Request, session_id: str, file: UploadFile) -> SessionResponse:
    """File-picker path: decode the uploaded file and hold it for detection."""
    session = _get_session(request, session_id)
    data = await file.read()
    try:
        await session.select_file(data)
    except SessionStateError as exc:
        raise _conflict(exc) from None
    except ImageDecodeError as exc:
        raise _unprocessable(exc) from None
    return SessionResponse.from_session(session)


@router.post(
    "/sessions/{session_id}/capture",
    response_model=SessionResponse,
    responses={**_SESSION_ERRORS, status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse}},
    summary="Select an image from the device camera or gallery",
)
async def capture_image(request: Request, session_id: str, body: CaptureRequest) -> SessionResponse:
    """Camera/gallery path. A null ``data_url`` is a cancellation and changes nothing."""
    session = _get_session(request, session_id)
    capture = _PostedCapture(body.data_url)
    try:
        if ImageSource(body.source) is ImageSource.CAMERA:
            await session.select_from_camera(capture)
        else:
            await session.select_from_gallery(capture)
    except SessionStateError as exc:
        raise _conflict(exc) from None
    except ImageDecodeError as exc:
        raise _unprocessable(exc) from None
    return SessionResponse.from_session(session)


@router.post(
    "/sessions/{session_id}/detect",
    response_model=SessionResponse,
    responses=_MODEL_ERRORS,
    summary="Classify the selected image",
)
async def detect(request: Request, session_id: str) -> SessionResponse:
    """Run detection. A failed detection is reported in the session state, not as an HTTP error."""
    session = _get_session(request, session_id)
    loader = _get_model_loader(request)
    if loader.state is ModelReadiness.FAILED:
        raise _model_unavailable(str(loader.error) if loader.error else None)
    if not session.can_detect():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Detection not available in state '{session.state}'",
        )
    await session.detect()
    return SessionResponse.from_session(session)


@router.post(
    "/sessions/{session_id}/reset",
    response_model=SessionResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Discard the image and result",
)
async def reset_session(request: Request, session_id: str) -> SessionResponse:
    session = _get_session(request, session_id)
    session.reset()
    return SessionResponse.from_session(session)


@router.post(
    "/sessions/{session_id}/dismiss-error",
    response_model=SessionResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Dismiss the session's error message",
)
async def dismiss_error(request: Request, session_id: str) -> SessionResponse:
    session = _get_session(request, session_id)
    session.clear_error()
    return SessionResponse.from_session(session)
