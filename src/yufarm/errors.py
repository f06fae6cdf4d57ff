"""Error taxonomy for the detection pipeline."""

from __future__ import annotations


class YuFarmError(Exception):
    """Base class for YuFarm errors."""


class ModelLoadError(YuFarmError):
    """The classifier artifact could not be fetched or deserialized."""


class ImageDecodeError(YuFarmError, ValueError):
    """An acquired payload is not a decodable image."""


class UserCancelled(YuFarmError):  # noqa: N818
    """Raised by a capture collaborator when the user backs out.

    Not an error from the session's point of view: the image source adapter
    turns it into ``None``.
    """


class InferenceError(YuFarmError):
    """Preprocessing or the forward pass failed for one detection request."""


class IndexOutOfRangeError(YuFarmError, IndexError):
    """A class index has no entry in the disease table."""


class SessionStateError(YuFarmError):
    """A command is not valid in the session's current state."""
