"""Image decoding and classifier input preparation.

Decoding turns raw bytes (or a ``data:`` URL as returned by mobile camera
plugins) into an RGB uint8 array. Preprocessing turns that array into the
classifier's fixed ``[1, 256, 256, 3]`` float32 input.
"""

from __future__ import annotations

import base64
import binascii
import io
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from yufarm.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from yufarm.config import Settings
    from yufarm.ml.image_source import ImageHandle

INPUT_SIZE: int = 256
INPUT_SHAPE: tuple[int, int, int, int] = (1, INPUT_SIZE, INPUT_SIZE, 3)

_DATA_URL_PREFIX = "data:"


@dataclass(frozen=True)
class ImageLimits:
    """Upper bounds applied before and during decoding."""

    max_file_size: int = 20_971_520
    max_pixels: int = 16_777_216

    @classmethod
    def from_settings(cls, settings: Settings) -> ImageLimits:
        return cls(max_file_size=settings.max_file_size, max_pixels=settings.max_image_pixels)


def decode_data_url(data_url: str) -> bytes:
    """Extract the payload of a base64 ``data:`` URL.

    Raises:
        ImageDecodeError: If the URL is not a base64 data URL or the payload is invalid.
    """
    if not data_url.startswith(_DATA_URL_PREFIX):
        raise ImageDecodeError("Expected a data: URL")
    header, sep, payload = data_url.partition(",")
    if not sep:
        raise ImageDecodeError("Data URL has no payload separator")
    media_params = header[len(_DATA_URL_PREFIX) :].split(";")
    if "base64" not in media_params[1:]:
        raise ImageDecodeError("Only base64-encoded data URLs are supported")
    if media_params[0] and not media_params[0].startswith("image/"):
        raise ImageDecodeError(f"Data URL media type {media_params[0]!r} is not an image")
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise ImageDecodeError(f"Invalid base64 payload: {exc}") from exc


def decode_image(image_bytes: bytes, limits: ImageLimits | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    EXIF orientation is applied, so the array matches what a browser renders.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        limits: Size limits; defaults to ``ImageLimits()``.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ImageDecodeError: If the image cannot be decoded or exceeds size limits.
    """
    limits = limits or ImageLimits()
    if not image_bytes:
        raise ImageDecodeError("Image payload is empty")
    if len(image_bytes) > limits.max_file_size:
        raise ImageDecodeError(f"Image payload of {len(image_bytes)} bytes exceeds limit of {limits.max_file_size}")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > limits.max_pixels:
                raise ImageDecodeError(f"Image of {width}x{height} pixels exceeds limit of {limits.max_pixels}")
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
    except ImageDecodeError:
        raise
    # Pillow plugins report corrupt headers with ValueError as well as OSError
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise ImageDecodeError(f"Could not decode image: {exc}") from exc

    pixels = np.asarray(rgb, dtype=np.uint8)
    if pixels.ndim != 3 or pixels.shape[2] != 3 or 0 in pixels.shape:
        raise ImageDecodeError(f"Decoded image has unusable shape {pixels.shape}")
    return pixels


def resize_nearest(pixels: NDArray[np.uint8], size: int = INPUT_SIZE) -> NDArray[np.uint8]:
    """Nearest-neighbour resize to ``size`` x ``size``.

    Follows TensorFlow's ``resizeNearestNeighbor`` with ``alignCorners=False`` and
    ``halfPixelCenters=False``: output pixel ``d`` samples source ``floor(d * in / out)``.
    The classifier was trained on inputs resized this way; Pillow's NEAREST uses
    half-pixel centres and samples different pixels.
    """
    height, width = pixels.shape[:2]
    rows = np.minimum((np.arange(size, dtype=np.int64) * height) // size, height - 1)
    cols = np.minimum((np.arange(size, dtype=np.int64) * width) // size, width - 1)
    return pixels[rows[:, None], cols[None, :]]


def preprocess(image: ImageHandle) -> NDArray[np.float32]:
    """Convert an image into the classifier input tensor.

    Non-square images are squashed; nothing is cropped or padded.

    Returns:
        float32 array of shape ``[1, 256, 256, 3]`` with values in [0, 1].
    """
    resized = resize_nearest(image.pixels, INPUT_SIZE)
    scaled = resized.astype(np.float32) / np.float32(255.0)
    return np.expand_dims(scaled, axis=0)
