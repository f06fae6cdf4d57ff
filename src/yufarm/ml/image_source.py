"""Image source adapter: file picker, device camera, device gallery.

All three acquisition paths end in the same ``ImageHandle``. Camera and
gallery go through a ``DeviceCapture`` collaborator that may report a user
cancellation; cancellation yields ``None`` rather than an error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from yufarm.errors import ImageDecodeError, UserCancelled
from yufarm.ml.preprocessing import ImageLimits, decode_data_url, decode_image

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class ImageSource(StrEnum):
    FILE = "file"
    CAMERA = "camera"
    GALLERY = "gallery"


@dataclass(frozen=True, eq=False)
class ImageHandle:
    """Decoded RGB pixels of one acquired image."""

    pixels: NDArray[np.uint8] = field(repr=False)
    source: ImageSource

    def __post_init__(self) -> None:
        self.pixels.setflags(write=False)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


class DeviceCapture(Protocol):
    """External camera/gallery capability."""

    async def get_photo(self, source: ImageSource) -> bytes | str | None:
        """Capture or pick a photo.

        Returns:
            Raw image bytes, a base64 ``data:`` URL, or ``None`` if the user
            cancelled. Implementations may raise ``UserCancelled`` instead of
            returning ``None``.
        """
        ...


class ImageSourceAdapter:
    """Normalizes the three acquisition paths into ``ImageHandle`` objects."""

    def __init__(self, limits: ImageLimits | None = None) -> None:
        self._limits = limits or ImageLimits()

    async def from_file_picker(self, file_bytes: bytes) -> ImageHandle:
        """Decode bytes chosen through a file picker.

        Raises:
            ImageDecodeError: If the bytes are not a decodable image.
        """
        return await self._decode(file_bytes, ImageSource.FILE)

    async def from_camera(self, capture: DeviceCapture) -> ImageHandle | None:
        """Take a photo with the device camera. ``None`` means cancelled."""
        return await self._from_device(capture, ImageSource.CAMERA)

    async def from_gallery(self, capture: DeviceCapture) -> ImageHandle | None:
        """Pick a photo from the device gallery. ``None`` means cancelled."""
        return await self._from_device(capture, ImageSource.GALLERY)

    async def _from_device(self, capture: DeviceCapture, source: ImageSource) -> ImageHandle | None:
        try:
            payload = await capture.get_photo(source)
        except UserCancelled:
            payload = None
        if payload is None:
            logger.debug("%s acquisition cancelled", source)
            return None

        if isinstance(payload, str):
            payload = decode_data_url(payload)
        return await self._decode(payload, source)

    async def _decode(self, data: bytes, source: ImageSource) -> ImageHandle:
        if not isinstance(data, bytes | bytearray | memoryview):
            raise ImageDecodeError(f"Unsupported image payload type {type(data).__name__}")
        pixels = await asyncio.to_thread(decode_image, bytes(data), self._limits)
        handle = ImageHandle(pixels=pixels, source=source)
        logger.debug("Decoded %s image %dx%d", source, handle.width, handle.height)
        return handle
