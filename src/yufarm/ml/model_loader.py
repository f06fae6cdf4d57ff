"""Model loader: fetch and deserialize the leaf classifier once per process.

Resolves the ONNX artifact (local path or HuggingFace download), builds the
ONNX Runtime session on the inference pool, and exposes readiness so that
detection can be blocked until the model is usable.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from yufarm.errors import ModelLoadError
from yufarm.ml.diseases import NUM_CLASSES
from yufarm.ml.image_classifier import OnnxClassifier

if TYPE_CHECKING:
    from collections.abc import Callable

    from yufarm.config import Settings
    from yufarm.ml.image_classifier import Classifier
    from yufarm.ml.inference import InferencePool

logger = logging.getLogger(__name__)


class ModelReadiness(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class ModelLoader:
    """Loads the classifier at most once and tracks its readiness.

    ``open_model`` is the blocking fetch-and-deserialize step; it defaults to
    the ONNX loader and runs on the inference pool.
    """

    def __init__(
        self,
        settings: Settings,
        pool: InferencePool,
        open_model: Callable[[], Classifier] | None = None,
    ) -> None:
        self._settings = settings
        self._pool = pool
        self._open_model = open_model or self._open_onnx
        self._state = ModelReadiness.IDLE
        self._model: Classifier | None = None
        self._error: ModelLoadError | None = None
        self._inflight: asyncio.Task[Classifier] | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> ModelReadiness:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ModelReadiness.READY

    @property
    def model(self) -> Classifier | None:
        """The loaded classifier, or None until ready."""
        return self._model

    @property
    def error(self) -> ModelLoadError | None:
        return self._error

    async def load(self) -> Classifier:
        """Load the classifier, or return the one already loaded.

        A call while a load is in flight awaits that attempt instead of
        starting another. After a failure the stored error is re-raised until
        ``retry()`` is called.

        Raises:
            ModelLoadError: If the artifact cannot be fetched or deserialized.
        """
        if self._state is ModelReadiness.READY and self._model is not None:
            return self._model
        if self._state is ModelReadiness.FAILED and self._error is not None:
            raise self._error
        if self._inflight is None:
            self._state = ModelReadiness.LOADING
            self._inflight = asyncio.ensure_future(self._load_once())
        return await asyncio.shield(self._inflight)

    async def retry(self) -> Classifier:
        """Re-invoke a failed load.

        Raises:
            RuntimeError: If the loader is not in the failed state.
            ModelLoadError: If the new attempt fails as well.
        """
        if self._state is not ModelReadiness.FAILED:
            raise RuntimeError(f"Model retry requires state 'failed', not '{self._state}'")
        logger.info("Retrying model load")
        self._state = ModelReadiness.IDLE
        self._error = None
        return await self.load()

    # -- Internal -----------------------------------------------------------

    async def _load_once(self) -> Classifier:
        try:
            model = await self._pool.run(self._open_model)
        except ModelLoadError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            error = ModelLoadError(f"Could not load classifier: {exc}")
            self._fail(error)
            raise error from exc
        finally:
            self._inflight = None

        self._model = model
        self._state = ModelReadiness.READY
        logger.info("Classifier %s ready", model.model_name)
        return model

    def _fail(self, error: ModelLoadError) -> None:
        self._error = error
        self._state = ModelReadiness.FAILED
        logger.error("Classifier load failed: %s", error)

    def _resolve_model_path(self) -> Path:
        """Return a local path to the ONNX artifact, downloading it if needed."""
        if self._settings.model_path:
            path = Path(self._settings.model_path)
            if not path.is_file():
                raise ModelLoadError(f"Model file not found: {path}")
            return path

        models_dir = Path(self._settings.models_dir)
        local = models_dir / self._settings.model_filename
        if local.is_file():
            return local

        models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=self._settings.model_repo_id,
                filename=self._settings.model_filename,
                local_dir=str(models_dir),
            )
        )
        logger.info("Downloaded %s to %s", self._settings.model_filename, downloaded)
        return downloaded

    def _open_onnx(self) -> Classifier:
        model_path = self._resolve_model_path()
        session = InferenceSession(
            str(model_path),
            sess_options=self._build_session_options(),
            providers=self._build_providers(),
        )
        return OnnxClassifier(session, model_name=model_path.stem, num_classes=NUM_CLASSES)

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
