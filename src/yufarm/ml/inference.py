"""Inference stage and its concurrency layer.

Architecture:
    session (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX forward pass

The pool also runs the one-shot model load so that neither blocks the event
loop. Waiting for a slot is unbounded unless ``inference_timeout`` is set.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

import numpy as np

from yufarm.errors import InferenceError

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from yufarm.config import Settings
    from yufarm.ml.image_classifier import Classifier

logger = logging.getLogger(__name__)

T = TypeVar("T")


def infer(model: Classifier, tensor: NDArray[np.float32]) -> NDArray[np.floating]:
    """Run exactly one forward pass and return the prediction vector.

    A ``[1, C]`` output is flattened to ``[C]``. The model's dtype is kept; scores are
    only widened to Python floats by ``select_class``. Only call with a loaded model;
    the session state machine guarantees this.

    Raises:
        InferenceError: If the model raises or returns an unusable vector.
    """
    try:
        raw = model.predict(tensor)
    except Exception as exc:
        raise InferenceError(f"Forward pass failed: {exc}") from exc

    prediction = np.asarray(raw).reshape(-1)
    if not np.issubdtype(prediction.dtype, np.number):
        raise InferenceError(f"Model returned non-numeric scores of dtype {prediction.dtype}")
    if prediction.size == 0:
        raise InferenceError("Model returned an empty prediction")
    if not np.all(np.isfinite(prediction)):
        raise InferenceError(f"Model returned non-finite scores: {prediction.tolist()}")
    return prediction


def select_class(prediction: NDArray[np.floating]) -> tuple[int, float]:
    """Return ``(index, score)`` of the highest score.

    Ties go to the lowest index. The score is reported as-is, not renormalized.
    """
    index = int(np.argmax(prediction))
    return index, float(prediction[index])


class InferencePool:
    """Manages the semaphore and thread pool for model work."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._timeout = settings.inference_timeout
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore (with the optional timeout), runs the function
        in the executor, then releases.

        Raises:
            TimeoutError: If a timeout is configured and no slot frees up in time.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
