"""Image preprocessing: decoding, size limits, detector input, and face alignment."""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError
from skimage.transform import SimilarityTransform

from lookalike.errors import ImageDecodeError, InvalidInput

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from lookalike.config import Settings

# Landmark positions (eyes, nose, mouth corners) in a 112x112 ArcFace crop.
ARCFACE_TEMPLATE: NDArray[np.float32] = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float32,
)
RECOGNITION_SIZE: int = 112

# BGR channel means the RetinaFace weights were trained with.
RETINAFACE_MEAN_BGR: NDArray[np.float32] = np.array([104.0, 117.0, 123.0], dtype=np.float32)


@dataclass(frozen=True)
class DetectionInput:
    """Detector tensor plus the factor mapping detector pixels back to the original image."""

    tensor: NDArray[np.float32]
    scale: float


def estimate_similarity_transform(src: NDArray[np.float32], dst: NDArray[np.float32]) -> NDArray[np.float64]:
    """Least-squares similarity transform (rotation, uniform scale, translation) mapping ``src`` onto ``dst``.

    Returns a 2x3 affine matrix.

    Raises:
        InvalidInput: If the source points are degenerate (all coincident).
    """
    tform = SimilarityTransform()
    estimated = tform.estimate(np.asarray(src, dtype=np.float64), np.asarray(dst, dtype=np.float64))
    matrix = np.asarray(tform.params[:2], dtype=np.float64)
    if not estimated or not np.all(np.isfinite(matrix)):
        raise InvalidInput("Landmarks are degenerate")
    return matrix


class ImagePreprocessor:
    """Turns uploaded bytes into model-ready tensors."""

    def __init__(self, settings: Settings) -> None:
        self._max_pixels = settings.max_image_pixels
        self._max_file_size = settings.max_file_size
        self._detection_size = settings.detection_size

    @property
    def detection_size(self) -> int:
        return self._detection_size

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 array, honoring EXIF orientation.

        Raises:
            ImageDecodeError: If the bytes are empty, undecodable, or over the size limits.
        """
        if not image_bytes:
            raise ImageDecodeError("Empty image")
        if len(image_bytes) > self._max_file_size:
            raise ImageDecodeError(
                f"Image file is {len(image_bytes)} bytes, limit is {self._max_file_size}",
                too_large=True,
            )

        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_pixels:
                    raise ImageDecodeError(
                        f"Image is {width}x{height} pixels, limit is {self._max_pixels}",
                        too_large=True,
                    )
                oriented = ImageOps.exif_transpose(img)
                rgb = oriented.convert("RGB")
        except Image.DecompressionBombError as exc:
            raise ImageDecodeError(str(exc), too_large=True) from None
        except (UnidentifiedImageError, OSError) as exc:
            raise ImageDecodeError(f"Cannot decode image: {exc}") from None

        return np.asarray(rgb, dtype=np.uint8)

    def preprocess_for_detection(self, image: NDArray[np.uint8]) -> DetectionInput:
        """Letterbox into a square detector canvas, returning an NCHW BGR mean-subtracted tensor."""
        size = self._detection_size
        height, width = image.shape[:2]
        scale = size / max(height, width)
        new_w = max(1, round(width * scale))
        new_h = max(1, round(height * scale))

        resized = Image.fromarray(image).resize((new_w, new_h), Image.Resampling.BILINEAR)
        canvas = np.zeros((size, size, 3), dtype=np.float32)
        canvas[:new_h, :new_w] = np.asarray(resized, dtype=np.float32)

        bgr = canvas[:, :, ::-1] - RETINAFACE_MEAN_BGR
        tensor = np.ascontiguousarray(bgr.transpose(2, 0, 1)[np.newaxis], dtype=np.float32)
        return DetectionInput(tensor=tensor, scale=scale)

    def align_face(self, image: NDArray[np.uint8], landmarks: NDArray[np.float32]) -> NDArray[np.uint8]:
        """Warp the face so its five landmarks land on the ArcFace template; returns 112x112x3."""
        matrix = estimate_similarity_transform(landmarks, ARCFACE_TEMPLATE)
        warped = cv2.warpAffine(
            np.ascontiguousarray(image), matrix, (RECOGNITION_SIZE, RECOGNITION_SIZE), borderValue=(0, 0, 0)
        )
        return np.asarray(warped, dtype=np.uint8)

    def preprocess_for_recognition(
        self, image: NDArray[np.uint8], landmarks: NDArray[np.float32]
    ) -> NDArray[np.float32]:
        """Align and normalize a face crop to a (1, 3, 112, 112) tensor in [-1, 1]."""
        crop = self.align_face(image, landmarks).astype(np.float32)
        normalized = (crop - 127.5) / 127.5
        return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis], dtype=np.float32)
