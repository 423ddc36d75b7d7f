"""Image bytes in, single-face embedding out."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from lookalike.errors import InvalidInput, NoFaceDetected
from lookalike.ml.face_detector import RetinaFaceDetector
from lookalike.ml.face_recognizer import ArcFaceRecognizer
from lookalike.ml.preprocessing import ImagePreprocessor

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from lookalike.config import Settings
    from lookalike.ml.face_detector import FaceDetector, RawDetection
    from lookalike.ml.face_recognizer import FaceRecognizer
    from lookalike.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceEmbedding:
    """The most prominent face in an image.

    Box coordinates are relative to the image size (0.0-1.0).
    """

    x: float
    y: float
    width: float
    height: float
    score: float
    embedding: NDArray[np.float32]


class FaceEmbeddingService:
    """Decode, detect, align, and embed the highest-scoring face."""

    def __init__(
        self,
        preprocessor: ImagePreprocessor,
        detector: FaceDetector,
        recognizer: FaceRecognizer,
    ) -> None:
        self._preprocessor = preprocessor
        self._detector = detector
        self._recognizer = recognizer

    @classmethod
    def from_settings(cls, settings: Settings, model_manager: ModelManager) -> FaceEmbeddingService:
        return cls(
            preprocessor=ImagePreprocessor(settings),
            detector=RetinaFaceDetector(
                model_manager,
                settings.face_detection_model,
                min_score=settings.min_face_score,
                nms_threshold=settings.nms_threshold,
            ),
            recognizer=ArcFaceRecognizer(model_manager, settings.face_recognition_model),
        )

    def embed_primary_face(self, image_bytes: bytes) -> FaceEmbedding:
        """Embed the highest-scoring face in the image.

        Raises:
            ImageDecodeError: If the image cannot be decoded or is too large.
            NoFaceDetected: If no face is detected, or none can be aligned.
        """
        image = self._preprocessor.decode_image(image_bytes)
        detections = self._detector.detect(self._preprocessor.preprocess_for_detection(image))
        if not detections:
            raise NoFaceDetected("No face found in image")

        best, crop = self._first_alignable(image, detections)
        embedding = self._recognizer.get_embeddings(crop)[0]

        height, width = image.shape[:2]
        x1, y1, x2, y2 = (float(v) for v in best.bbox)
        x1, x2 = max(0.0, x1), min(float(width), x2)
        y1, y2 = max(0.0, y1), min(float(height), y2)
        logger.debug("Embedded face (score=%.3f) from %dx%d image", best.score, width, height)
        return FaceEmbedding(
            x=x1 / width,
            y=y1 / height,
            width=max(0.0, x2 - x1) / width,
            height=max(0.0, y2 - y1) / height,
            score=best.score,
            embedding=embedding,
        )

    def _first_alignable(
        self, image: NDArray[np.uint8], detections: list[RawDetection]
    ) -> tuple[RawDetection, NDArray[np.float32]]:
        for detection in sorted(detections, key=lambda d: d.score, reverse=True):
            try:
                return detection, self._preprocessor.preprocess_for_recognition(image, detection.landmarks)
            except InvalidInput:
                logger.debug("Skipping face (score=%.3f) with degenerate landmarks", detection.score)
        raise NoFaceDetected("No alignable face found in image")

    def detect_embedding(self, image_bytes: bytes) -> NDArray[np.float32]:
        """Return just the embedding of the highest-scoring face."""
        return self.embed_primary_face(image_bytes).embedding
