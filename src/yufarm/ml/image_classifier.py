"""Leaf disease classifier backed by an ONNX Runtime session."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from yufarm.errors import ModelLoadError
from yufarm.ml.preprocessing import INPUT_SIZE

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    """Protocol for the pretrained leaf classifier."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.floating]:
        """Run one forward pass.

        Args:
            tensor: float32 array of shape ``[1, 256, 256, 3]``.

        Returns:
            Raw class scores, shape ``[1, num_classes]``.
        """
        ...


class OnnxClassifier:
    """Wraps an NHWC image-classification ``InferenceSession``."""

    def __init__(self, session: InferenceSession, model_name: str, num_classes: int) -> None:
        self._session = session
        self._model_name = model_name
        self._input_name, self._output_name = self._check_signature(session, num_classes)

    @property
    def model_name(self) -> str:
        return self._model_name

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.floating]:
        outputs = self._session.run([self._output_name], {self._input_name: tensor})
        return np.asarray(outputs[0])

    @staticmethod
    def _check_signature(session: InferenceSession, num_classes: int) -> tuple[str, str]:
        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if len(inputs) != 1 or not outputs:
            raise ModelLoadError(f"Expected one input and at least one output, got {len(inputs)} and {len(outputs)}")

        # The batch dimension may be dynamic (a string or None); the rest must be fixed
        in_shape = list(inputs[0].shape)
        if len(in_shape) != 4 or in_shape[1:] != [INPUT_SIZE, INPUT_SIZE, 3]:
            raise ModelLoadError(f"Model input shape {in_shape} is not [batch, {INPUT_SIZE}, {INPUT_SIZE}, 3]")

        out_shape = list(outputs[0].shape)
        if not out_shape or out_shape[-1] != num_classes:
            raise ModelLoadError(f"Model output shape {out_shape} does not end in {num_classes} classes")

        logger.debug("Classifier signature: %s%s -> %s%s", inputs[0].name, in_shape, outputs[0].name, out_shape)
        return inputs[0].name, outputs[0].name
