"""Tests for the detection session state machine."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import TYPE_CHECKING
from unittest.mock import patch

import numpy as np
import pytest

from conftest import StubClassifier, encode_image, to_data_url
from yufarm.errors import ImageDecodeError, IndexOutOfRangeError, SessionStateError
from yufarm.ml.image_source import ImageSource, ImageSourceAdapter
from yufarm.ml.inference import InferencePool
from yufarm.ml.model_loader import ModelLoader
from yufarm.session import DetectionSession, SessionContext, SessionState, SessionStore

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from numpy.typing import NDArray

    from yufarm.config import Settings
    from yufarm.ml.image_classifier import Classifier

BLACK_256 = encode_image(256, 256, (0, 0, 0))


class BlockingClassifier(StubClassifier):
    """Stub whose forward pass waits until released."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        self.started.set()
        self.release.wait(timeout=5)
        return super().predict(tensor)


class Capture:
    def __init__(self, payload: bytes | str | None) -> None:
        self.payload = payload

    async def get_photo(self, source: ImageSource) -> bytes | str | None:
        return self.payload


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def pool(settings: Settings) -> Iterator[InferencePool]:
    inference_pool = InferencePool(settings)
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def make_context(settings: Settings, pool: InferencePool) -> Callable[..., SessionContext]:
    def factory(open_model: Callable[[], Classifier]) -> SessionContext:
        return SessionContext(
            loader=ModelLoader(settings, pool, open_model=open_model),
            pool=pool,
            images=ImageSourceAdapter(),
        )

    return factory


async def _started(context: SessionContext) -> DetectionSession:
    session = DetectionSession(context)
    await session.start()
    return session


async def _wait_for(predicate: Callable[[], bool]) -> None:
    for _ in range(500):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


# ---------------------------------------------------------------------------
# Model readiness
# ---------------------------------------------------------------------------


class TestModelPhase:
    async def test_new_session_is_idle(self, make_context: Callable[..., SessionContext]) -> None:
        session = DetectionSession(make_context(StubClassifier))
        assert session.state is SessionState.IDLE
        assert session.image is None
        assert session.result is None

    async def test_start_waits_for_model(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))
        assert session.state is SessionState.AWAITING_IMAGE

    async def test_state_is_model_loading_while_loading(
        self, make_context: Callable[..., SessionContext]
    ) -> None:
        release = threading.Event()

        def slow_model() -> StubClassifier:
            release.wait(timeout=5)
            return StubClassifier()

        session = DetectionSession(make_context(slow_model))
        task = asyncio.create_task(session.start())
        await _wait_for(lambda: session.state is SessionState.MODEL_LOADING)
        assert await session.detect() is None
        release.set()
        await task
        assert session.state is SessionState.AWAITING_IMAGE

    async def test_load_failure(self, make_context: Callable[..., SessionContext]) -> None:
        def broken() -> StubClassifier:
            raise OSError("model.json not reachable")

        session = await _started(make_context(broken))
        assert session.state is SessionState.MODEL_FAILED
        assert "not reachable" in (session.error or "")

    async def test_retry_after_failure(self, make_context: Callable[..., SessionContext]) -> None:
        attempts: list[int] = []

        def flaky() -> StubClassifier:
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError("offline")
            return StubClassifier()

        session = await _started(make_context(flaky))
        assert session.state is SessionState.MODEL_FAILED

        await session.retry_model()
        assert session.state is SessionState.AWAITING_IMAGE
        assert session.error is None
        assert len(attempts) == 2

    async def test_retry_only_from_failed(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))
        with pytest.raises(SessionStateError):
            await session.retry_model()

    async def test_sessions_share_one_model(self, make_context: Callable[..., SessionContext]) -> None:
        calls: list[int] = []

        def counting() -> StubClassifier:
            calls.append(1)
            return StubClassifier()

        context = make_context(counting)
        first = await _started(context)
        second = await _started(context)
        assert first.state is second.state is SessionState.AWAITING_IMAGE
        assert calls == [1]

    async def test_select_before_model_ready_is_rejected(
        self, make_context: Callable[..., SessionContext]
    ) -> None:
        session = DetectionSession(make_context(StubClassifier))
        with pytest.raises(SessionStateError):
            await session.select_file(BLACK_256)
        assert session.image is None


# ---------------------------------------------------------------------------
# Image selection
# ---------------------------------------------------------------------------


class TestImageSelection:
    async def test_file_selection(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))
        assert await session.select_file(BLACK_256) is True
        assert session.state is SessionState.IMAGE_SELECTED
        assert session.image is not None
        assert session.image.source is ImageSource.FILE

    async def test_camera_and_gallery_selection(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))

        await session.select_from_camera(Capture(to_data_url(encode_image(8, 8))))
        assert session.image is not None
        assert session.image.source is ImageSource.CAMERA

        await session.select_from_gallery(Capture(encode_image(8, 8)))
        assert session.image.source is ImageSource.GALLERY
        assert session.state is SessionState.IMAGE_SELECTED

    async def test_reselect_replaces_image(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))
        await session.select_file(encode_image(10, 10))
        first = session.image
        await session.select_file(encode_image(12, 12))
        assert session.image is not first
        assert session.image is not None
        assert session.image.width == 12
        assert session.state is SessionState.IMAGE_SELECTED

    async def test_cancellation_changes_nothing(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))
        await session.select_file(BLACK_256)
        held = session.image

        assert await session.select_from_camera(Capture(None)) is False
        assert session.image is held
        assert session.state is SessionState.IMAGE_SELECTED

    async def test_cancellation_from_awaiting_image(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))
        assert await session.select_from_gallery(Capture(None)) is False
        assert session.state is SessionState.AWAITING_IMAGE
        assert session.error is None

    async def test_decode_error_keeps_state(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))
        await session.select_file(BLACK_256)
        held = session.image

        with pytest.raises(ImageDecodeError):
            await session.select_file(b"corrupt")

        assert session.state is SessionState.IMAGE_SELECTED
        assert session.image is held
        assert session.error is not None
        session.clear_error()
        assert session.error is None

    async def test_new_image_clears_result(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))
        await session.select_file(BLACK_256)
        await session.detect()
        assert session.result is not None

        await session.select_file(encode_image(20, 20))
        assert session.result is None
        assert session.state is SessionState.IMAGE_SELECTED


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetection:
    async def test_end_to_end_black_image(self, make_context: Callable[..., SessionContext]) -> None:
        model = StubClassifier([0.9, 0.02, 0.02, 0.03, 0.03])
        session = await _started(make_context(lambda: model))
        await session.select_file(BLACK_256)

        result = await session.detect()

        assert result is not None
        assert result.label == "Bacteria wilt"
        assert result.confidence == pytest.approx(0.9)
        assert result.cause.startswith("Disebabkan oleh bakteri Ralstonia")
        assert session.state is SessionState.RESULT_READY
        assert session.result is result

        assert len(model.inputs) == 1
        assert model.inputs[0].shape == (1, 256, 256, 3)
        assert not model.inputs[0].any()

    @pytest.mark.parametrize(
        ("scores", "label"),
        [
            ([0.2, 0.2, 0.5, 0.05, 0.05], "Late blight"),
            ([0.3, 0.3, 0.1, 0.1, 0.2], "Bacteria wilt"),
            ([0.0, 0.0, 0.0, 0.0, 1.0], "Virus PVY"),
        ],
    )
    async def test_argmax_label(
        self, make_context: Callable[..., SessionContext], scores: list[float], label: str
    ) -> None:
        session = await _started(make_context(lambda: StubClassifier(scores)))
        await session.select_file(BLACK_256)
        result = await session.detect()
        assert result is not None
        assert result.label == label

    async def test_detect_without_image_is_noop(self, make_context: Callable[..., SessionContext]) -> None:
        model = StubClassifier()
        session = await _started(make_context(lambda: model))
        assert await session.detect() is None
        assert session.state is SessionState.AWAITING_IMAGE
        assert model.inputs == []

    async def test_detect_with_failed_model_is_noop(self, make_context: Callable[..., SessionContext]) -> None:
        def broken() -> StubClassifier:
            raise OSError("gone")

        session = await _started(make_context(broken))
        assert await session.detect() is None
        assert session.state is SessionState.MODEL_FAILED

    async def test_inference_failure_is_recoverable(self, make_context: Callable[..., SessionContext]) -> None:
        model = StubClassifier(error=RuntimeError("kernel crashed"))
        session = await _started(make_context(lambda: model))
        await session.select_file(BLACK_256)

        assert await session.detect() is None
        assert session.state is SessionState.DETECTION_FAILED
        assert session.result is None
        assert session.image is not None
        assert "kernel crashed" in (session.error or "")

        model.error = None
        result = await session.detect()
        assert result is not None
        assert session.state is SessionState.RESULT_READY
        assert session.error is None

    async def test_table_mismatch_is_fatal(self, make_context: Callable[..., SessionContext]) -> None:
        model = StubClassifier([0.0, 0.0, 0.0, 0.0, 0.0, 1.0])
        session = await _started(make_context(lambda: model))
        await session.select_file(BLACK_256)

        with pytest.raises(IndexOutOfRangeError):
            await session.detect()
        assert session.result is None
        assert session.state is SessionState.DETECTION_FAILED

    async def test_second_detect_while_detecting_is_ignored(
        self, make_context: Callable[..., SessionContext]
    ) -> None:
        model = BlockingClassifier()
        session = await _started(make_context(lambda: model))
        await session.select_file(BLACK_256)

        first = asyncio.create_task(session.detect())
        await _wait_for(model.started.is_set)
        assert session.state is SessionState.DETECTING
        assert not session.can_detect()

        assert await session.detect() is None
        with pytest.raises(SessionStateError):
            await session.select_file(BLACK_256)
        session.reset()
        assert session.state is SessionState.DETECTING

        model.release.set()
        result = await first
        assert result is not None
        assert len(model.inputs) == 1
        assert session.state is SessionState.RESULT_READY

    async def test_cancelled_detect_holds_until_forward_finishes(
        self, make_context: Callable[..., SessionContext]
    ) -> None:
        model = BlockingClassifier()
        session = await _started(make_context(lambda: model))
        await session.select_file(BLACK_256)

        first = asyncio.create_task(session.detect())
        await _wait_for(model.started.is_set)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        # The forward pass is still running in the pool
        assert session.state is SessionState.DETECTING
        assert await session.detect() is None

        model.release.set()
        await _wait_for(lambda: session.state is SessionState.DETECTION_FAILED)
        assert session.error == "Detection cancelled"
        assert session.result is None
        assert len(model.inputs) == 1

        result = await session.detect()
        assert result is not None
        assert len(model.inputs) == 2

    async def test_detecting_requires_ready_model_and_image(
        self, make_context: Callable[..., SessionContext]
    ) -> None:
        session = DetectionSession(make_context(StubClassifier))
        assert not session.can_detect()
        await session.start()
        assert not session.can_detect()
        await session.select_file(BLACK_256)
        assert session.can_detect()

    async def test_preprocessing_failure_is_inference_error(
        self, make_context: Callable[..., SessionContext], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def explode(image: object) -> None:
            raise MemoryError("no room for tensor")

        monkeypatch.setattr("yufarm.session.preprocess", explode)
        session = await _started(make_context(StubClassifier))
        await session.select_file(BLACK_256)

        assert await session.detect() is None
        assert session.state is SessionState.DETECTION_FAILED
        assert "Preprocessing failed" in (session.error or "")


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


class TestReset:
    async def test_reset_from_result(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(StubClassifier))
        await session.select_file(BLACK_256)
        await session.detect()
        assert session.state is SessionState.RESULT_READY

        session.reset()

        assert session.state is SessionState.AWAITING_IMAGE
        assert session.image is None
        assert session.result is None

    async def test_reset_from_detection_failed(self, make_context: Callable[..., SessionContext]) -> None:
        session = await _started(make_context(lambda: StubClassifier(error=RuntimeError("boom"))))
        await session.select_file(BLACK_256)
        await session.detect()

        session.reset()

        assert session.state is SessionState.AWAITING_IMAGE
        assert session.image is None
        assert session.error is None

    async def test_reset_ignored_before_model_ready(self, make_context: Callable[..., SessionContext]) -> None:
        session = DetectionSession(make_context(StubClassifier))
        session.reset()
        assert session.state is SessionState.IDLE


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class TestSessionStore:
    def test_create_and_get(self, make_context: Callable[..., SessionContext]) -> None:
        store = SessionStore(make_context(StubClassifier), max_sessions=2)
        session = store.create()
        assert store.get(session.id) is session
        assert len(store) == 1
        assert list(store) == [session]

    def test_unknown_session(self, make_context: Callable[..., SessionContext]) -> None:
        store = SessionStore(make_context(StubClassifier), max_sessions=2)
        with pytest.raises(KeyError, match="Unknown session"):
            store.get("missing")

    def test_limit(self, make_context: Callable[..., SessionContext]) -> None:
        store = SessionStore(make_context(StubClassifier), max_sessions=1)
        store.create()
        with pytest.raises(RuntimeError, match="limit"):
            store.create()

    def test_remove(self, make_context: Callable[..., SessionContext]) -> None:
        store = SessionStore(make_context(StubClassifier), max_sessions=1)
        session = store.create()
        store.remove(session.id)
        assert len(store) == 0
        store.create()

    def test_idle_sessions_evicted_when_full(self, make_context: Callable[..., SessionContext]) -> None:
        store = SessionStore(make_context(StubClassifier), max_sessions=3, ttl=60)
        stale = [store.create() for _ in range(3)]
        with patch("yufarm.session.time.monotonic", return_value=time.monotonic() + 61):
            fresh = store.create()
        assert len(store) == 1
        assert list(store) == [fresh]
        for session in stale:
            with pytest.raises(KeyError):
                store.get(session.id)

    def test_get_refreshes_last_use(self, make_context: Callable[..., SessionContext]) -> None:
        store = SessionStore(make_context(StubClassifier), max_sessions=2, ttl=60)
        now = time.monotonic()
        kept = store.create()
        store.create()
        with patch("yufarm.session.time.monotonic", return_value=now + 50):
            store.get(kept.id)
        with patch("yufarm.session.time.monotonic", return_value=now + 70):
            store.create()
        assert kept in list(store)
        assert len(store) == 2

    def test_zero_ttl_never_evicts(self, make_context: Callable[..., SessionContext]) -> None:
        store = SessionStore(make_context(StubClassifier), max_sessions=1, ttl=0)
        store.create()
        with patch("yufarm.session.time.monotonic", return_value=time.monotonic() + 10_000):
            assert store.evict_idle() == 0
            with pytest.raises(RuntimeError, match="limit"):
                store.create()

    async def test_detecting_session_is_not_evicted(self, make_context: Callable[..., SessionContext]) -> None:
        model = BlockingClassifier()
        store = SessionStore(make_context(lambda: model), max_sessions=1, ttl=60)
        session = store.create()
        await session.start()
        await session.select_file(BLACK_256)
        task = asyncio.create_task(session.detect())
        await _wait_for(model.started.is_set)

        with patch("yufarm.session.time.monotonic", return_value=time.monotonic() + 61):
            assert store.evict_idle() == 0
        assert list(store) == [session]

        model.release.set()
        assert await task is not None
