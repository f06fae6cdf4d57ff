"""Detection session: the state machine driving acquire -> detect -> result.

A session owns at most one ``ImageHandle`` and one ``DetectionResult``. The
classifier is shared and read-only; it comes from the ``ModelLoader`` passed
in with the session context.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from yufarm.errors import ImageDecodeError, InferenceError, ModelLoadError, SessionStateError
from yufarm.ml.diseases import describe
from yufarm.ml.inference import infer, select_class
from yufarm.ml.model_loader import ModelReadiness
from yufarm.ml.preprocessing import preprocess

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterator

    import numpy as np
    from numpy.typing import NDArray

    from yufarm.ml.diseases import DetectionResult
    from yufarm.ml.image_classifier import Classifier
    from yufarm.ml.image_source import DeviceCapture, ImageHandle, ImageSourceAdapter
    from yufarm.ml.inference import InferencePool
    from yufarm.ml.model_loader import ModelLoader

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    IDLE = "idle"
    MODEL_LOADING = "model_loading"
    MODEL_FAILED = "model_failed"
    AWAITING_IMAGE = "awaiting_image"
    IMAGE_SELECTED = "image_selected"
    DETECTING = "detecting"
    RESULT_READY = "result_ready"
    DETECTION_FAILED = "detection_failed"


_SELECTABLE = frozenset(
    {
        SessionState.AWAITING_IMAGE,
        SessionState.IMAGE_SELECTED,
        SessionState.RESULT_READY,
        SessionState.DETECTION_FAILED,
    }
)
_DETECTABLE = frozenset({SessionState.IMAGE_SELECTED, SessionState.DETECTION_FAILED})
_RESETTABLE = frozenset(
    {
        SessionState.IMAGE_SELECTED,
        SessionState.RESULT_READY,
        SessionState.DETECTION_FAILED,
    }
)


@dataclass(frozen=True)
class SessionContext:
    """Shared collaborators handed to every session."""

    loader: ModelLoader
    pool: InferencePool
    images: ImageSourceAdapter


class DetectionSession:
    """One user's pass through the detection flow."""

    def __init__(self, context: SessionContext, session_id: str | None = None) -> None:
        self.id = session_id or uuid.uuid4().hex
        self._context = context
        self._state = SessionState.IDLE
        self._image: ImageHandle | None = None
        self._result: DetectionResult | None = None
        self._error: str | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def image(self) -> ImageHandle | None:
        return self._image

    @property
    def result(self) -> DetectionResult | None:
        return self._result

    @property
    def error(self) -> str | None:
        """User-visible message for the last recoverable failure, if any."""
        return self._error

    # -- Model ----------------------------------------------------------------

    async def start(self) -> None:
        """Wait for the shared classifier. ``idle -> model_loading -> awaiting_image | model_failed``."""
        if self._state is not SessionState.IDLE:
            return
        await self._await_model(self._context.loader.load())

    async def retry_model(self) -> None:
        """Re-trigger a failed model load. Only valid in ``model_failed``."""
        if self._state is not SessionState.MODEL_FAILED:
            raise SessionStateError(f"Cannot retry model load in state '{self._state}'")
        loader = self._context.loader
        # Another session may already have retried the shared loader
        pending = loader.retry() if loader.state is ModelReadiness.FAILED else loader.load()
        await self._await_model(pending)

    async def _await_model(self, pending: Awaitable[Classifier]) -> None:
        self._transition(SessionState.MODEL_LOADING)
        try:
            await pending
        except ModelLoadError as exc:
            self._error = str(exc)
            self._transition(SessionState.MODEL_FAILED)
            return
        self._error = None
        self._transition(SessionState.AWAITING_IMAGE)

    # -- Image acquisition ----------------------------------------------------

    async def select_file(self, file_bytes: bytes) -> bool:
        """Select an image from file-picker bytes."""
        self._require_selectable()
        return await self._select(self._context.images.from_file_picker(file_bytes))

    async def select_from_camera(self, capture: DeviceCapture) -> bool:
        """Select an image taken with the device camera."""
        self._require_selectable()
        return await self._select(self._context.images.from_camera(capture))

    async def select_from_gallery(self, capture: DeviceCapture) -> bool:
        """Select an image picked from the device gallery."""
        self._require_selectable()
        return await self._select(self._context.images.from_gallery(capture))

    async def _select(self, acquisition: Awaitable[ImageHandle | None]) -> bool:
        """Apply an acquisition outcome.

        Returns:
            True if a new image is now held, False if the user cancelled.

        Raises:
            ImageDecodeError: If the payload could not be decoded. The session
                keeps its previous image and state and records the message.
        """
        try:
            handle = await acquisition
        except ImageDecodeError as exc:
            self._error = str(exc)
            logger.info("Session %s: image rejected: %s", self.id, exc)
            raise
        if handle is None:
            return False

        # The state may have moved on while a device capture was pending
        self._require_selectable()
        self._image = handle
        self._result = None
        self._error = None
        self._transition(SessionState.IMAGE_SELECTED)
        return True

    def _require_selectable(self) -> None:
        if self._state not in _SELECTABLE:
            raise SessionStateError(f"Cannot select an image in state '{self._state}'")

    # -- Detection ------------------------------------------------------------

    def can_detect(self) -> bool:
        return self._state in _DETECTABLE and self._image is not None and self._context.loader.is_ready

    async def detect(self) -> DetectionResult | None:
        """Classify the held image.

        Returns None without changing anything when detection is not allowed:
        no image, model not ready, or another detection already in flight.

        Raises:
            IndexOutOfRangeError: If the classifier disagrees with the disease
                table. This is a bug, not a recoverable detection failure.
        """
        model = self._context.loader.model
        image = self._image
        if not self.can_detect() or model is None or image is None:
            logger.debug("Session %s: detect ignored in state %s", self.id, self._state)
            return None

        self._result = None
        self._error = None
        self._transition(SessionState.DETECTING)
        forward = asyncio.ensure_future(self._context.pool.run(_forward, model, image))
        try:
            prediction = await asyncio.shield(forward)
            index, confidence = select_class(prediction)
            result = describe(index, confidence)
        except (InferenceError, TimeoutError) as exc:
            self._error = str(exc) or "Detection timed out"
            logger.warning("Session %s: detection failed: %s", self.id, self._error)
            self._transition(SessionState.DETECTION_FAILED)
            return None
        except asyncio.CancelledError:
            # The executor thread cannot be interrupted; hold detecting until it finishes
            forward.add_done_callback(self._settle_abandoned)
            raise
        except BaseException:
            self._transition(SessionState.DETECTION_FAILED)
            raise

        self._result = result
        self._transition(SessionState.RESULT_READY)
        logger.info("Session %s: %s (%.3f)", self.id, result.label, result.confidence)
        return result

    def _settle_abandoned(self, forward: asyncio.Future[NDArray[np.floating]]) -> None:
        """Close out a detection whose caller was cancelled mid-forward."""
        if not forward.cancelled() and forward.exception() is not None:
            logger.debug("Session %s: abandoned forward pass raised %r", self.id, forward.exception())
        self._error = "Detection cancelled"
        self._transition(SessionState.DETECTION_FAILED)

    # -- Reset ----------------------------------------------------------------

    def reset(self) -> None:
        """Drop the image and result and wait for a new image."""
        if self._state not in _RESETTABLE:
            logger.debug("Session %s: reset ignored in state %s", self.id, self._state)
            return
        self._image = None
        self._result = None
        self._error = None
        self._transition(SessionState.AWAITING_IMAGE)

    def clear_error(self) -> None:
        """Dismiss the user-visible error message."""
        self._error = None

    def _transition(self, new_state: SessionState) -> None:
        logger.debug("Session %s: %s -> %s", self.id, self._state, new_state)
        self._state = new_state


def _forward(model: Classifier, image: ImageHandle) -> NDArray[np.floating]:
    """Preprocess and run one forward pass; the tensor does not outlive this call."""
    try:
        tensor = preprocess(image)
    except Exception as exc:
        raise InferenceError(f"Preprocessing failed: {exc}") from exc
    try:
        return infer(model, tensor)
    finally:
        del tensor


@dataclass
class _StoredSession:
    session: DetectionSession
    last_used: float = field(default_factory=time.monotonic)


class SessionStore:
    """In-memory registry of live sessions.

    Sessions untouched for ``ttl`` seconds are evicted when a new one is
    created, so abandoned clients do not hold slots forever. A ``ttl`` of 0
    disables eviction. A session in ``detecting`` is never evicted.
    """

    def __init__(self, context: SessionContext, max_sessions: int, ttl: float = 0) -> None:
        self._context = context
        self._max_sessions = max_sessions
        self._ttl = ttl
        self._sessions: dict[str, _StoredSession] = {}

    def create(self) -> DetectionSession:
        """Register a new idle session.

        Raises:
            RuntimeError: If the store is still full after evicting idle sessions.
        """
        if len(self._sessions) >= self._max_sessions:
            self.evict_idle()
        if len(self._sessions) >= self._max_sessions:
            raise RuntimeError(f"Session limit of {self._max_sessions} reached")
        session = DetectionSession(self._context)
        self._sessions[session.id] = _StoredSession(session)
        return session

    def get(self, session_id: str) -> DetectionSession:
        """Look up a session and mark it as used."""
        try:
            entry = self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown session: {session_id}") from None
        entry.last_used = time.monotonic()
        return entry.session

    def remove(self, session_id: str) -> None:
        self.get(session_id)
        del self._sessions[session_id]

    def evict_idle(self) -> int:
        """Drop sessions idle for longer than the TTL.

        Returns:
            Number of sessions evicted.
        """
        if self._ttl <= 0:
            return 0
        now = time.monotonic()
        expired = [
            session_id
            for session_id, entry in self._sessions.items()
            if now - entry.last_used > self._ttl and entry.session.state is not SessionState.DETECTING
        ]
        for session_id in expired:
            del self._sessions[session_id]
            logger.info("Evicted idle session %s", session_id)
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[DetectionSession]:
        return iter([entry.session for entry in self._sessions.values()])
