"""Exception hierarchy for Lookalike."""

from __future__ import annotations


class LookalikeError(Exception):
    """Base class for all Lookalike errors."""


class NoFaceDetected(LookalikeError):  # noqa: N818
    """The detection service found no face in the image."""


class InvalidInput(LookalikeError):  # noqa: N818
    """An embedding or image violates a precondition (empty, wrong shape, mismatched dimensionality)."""


class ImageDecodeError(InvalidInput):
    """Image bytes could not be decoded or exceed the configured limits."""

    def __init__(self, message: str, *, too_large: bool = False) -> None:
        super().__init__(message)
        self.too_large = too_large
