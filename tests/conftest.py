"""Shared fixtures: a stub classifier, tiny encoded images, and settings."""

from __future__ import annotations

import base64
import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from yufarm.config import Settings

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from numpy.typing import NDArray

DEFAULT_SCORES = (0.9, 0.02, 0.02, 0.03, 0.03)


class StubClassifier:
    """Classifier double that returns fixed scores and records its inputs."""

    model_name = "stub_classifier"

    def __init__(self, scores: Sequence[float] = DEFAULT_SCORES, error: Exception | None = None) -> None:
        self.scores = list(scores)
        self.error = error
        self.inputs: list[NDArray[np.float32]] = []

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        self.inputs.append(tensor)
        if self.error is not None:
            raise self.error
        return np.asarray([self.scores], dtype=np.float32)


def encode_image(width: int, height: int, color: tuple[int, int, int] = (0, 0, 0), fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


def to_data_url(data: bytes, media_type: str = "image/png") -> str:
    return f"data:{media_type};base64,{base64.b64encode(data).decode()}"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(models_dir=str(tmp_path / "models"), max_concurrent=1)


@pytest.fixture()
def stub_model() -> StubClassifier:
    return StubClassifier()


@pytest.fixture()
def png_bytes() -> Callable[..., bytes]:
    return encode_image
