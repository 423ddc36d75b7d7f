"""RetinaFace face detection over ONNX Runtime.

Works with RetinaFace exports that emit three tensors per anchor: box
regressions (4), class scores (2), and landmark regressions (10). Both the
ResNet34 and MobileNetV2 backbones share this layout.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np

from lookalike.ml.model_manager import ModelTask, get_model_spec

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from lookalike.ml.model_manager import ModelManager
    from lookalike.ml.preprocessing import DetectionInput

logger = logging.getLogger(__name__)

MIN_SIZES: tuple[tuple[int, int], ...] = ((16, 32), (64, 128), (256, 512))
STEPS: tuple[int, ...] = (8, 16, 32)
VARIANCE: tuple[float, float] = (0.1, 0.2)


@dataclass(frozen=True)
class RawDetection:
    """A detected face in original-image pixel coordinates."""

    bbox: NDArray[np.float32]  # x1, y1, x2, y2
    score: float
    landmarks: NDArray[np.float32]  # (5, 2)


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, detection_input: DetectionInput) -> list[RawDetection]:
        """Detect faces, best score first."""
        ...


@lru_cache(maxsize=8)
def prior_boxes(image_size: int) -> NDArray[np.float32]:
    """Anchor centers and sizes (cx, cy, w, h), relative to ``image_size``."""
    anchors: list[list[float]] = []
    for step, min_sizes in zip(STEPS, MIN_SIZES, strict=True):
        cells = math.ceil(image_size / step)
        for row in range(cells):
            for col in range(cells):
                cx = (col + 0.5) * step / image_size
                cy = (row + 0.5) * step / image_size
                for min_size in min_sizes:
                    side = min_size / image_size
                    anchors.append([cx, cy, side, side])
    priors = np.array(anchors, dtype=np.float32)
    priors.setflags(write=False)
    return priors


def decode_boxes(loc: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
    centers = priors[:, :2] + loc[:, :2] * VARIANCE[0] * priors[:, 2:]
    sizes = priors[:, 2:] * np.exp(loc[:, 2:] * VARIANCE[1])
    return np.concatenate([centers - sizes / 2, centers + sizes / 2], axis=1)


def decode_landmarks(landms: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
    points = landms.reshape(-1, 5, 2)
    return priors[:, np.newaxis, :2] + points * VARIANCE[0] * priors[:, np.newaxis, 2:]


def nms(boxes: NDArray[np.float32], scores: NDArray[np.float32], iou_threshold: float) -> list[int]:
    """Non-maximum suppression over (x1, y1, x2, y2) boxes; returns kept indices, highest score first."""
    rects = [[float(x1), float(y1), float(x2 - x1), float(y2 - y1)] for x1, y1, x2, y2 in boxes]
    # Candidates are already score-filtered.
    indices = cv2.dnn.NMSBoxes(rects, [float(s) for s in scores], 0.0, iou_threshold)
    return [int(i) for i in np.asarray(indices).reshape(-1)]


class RetinaFaceDetector:
    """Single-shot RetinaFace detector backed by a managed ONNX session."""

    def __init__(
        self,
        model_manager: ModelManager,
        model_name: str,
        *,
        min_score: float = 0.5,
        nms_threshold: float = 0.4,
    ) -> None:
        get_model_spec(model_name, ModelTask.FACE_DETECTION)
        self._model_manager = model_manager
        self._model_name = model_name
        self._min_score = min_score
        self._nms_threshold = nms_threshold

    @property
    def model_name(self) -> str:
        return self._model_name

    def detect(self, detection_input: DetectionInput) -> list[RawDetection]:
        session = self._model_manager.get_session(self._model_name)
        tensor = detection_input.tensor
        input_name = session.get_inputs()[0].name
        outputs = session.run(None, {input_name: tensor})
        loc, conf, landms = self._split_outputs(outputs)

        size = int(tensor.shape[-1])
        priors = prior_boxes(size)
        if loc.shape[0] != priors.shape[0]:
            raise RuntimeError(
                f"{self._model_name} produced {loc.shape[0]} anchors, expected {priors.shape[0]} for size {size}"
            )

        scores = conf[:, 1]
        candidates = np.flatnonzero(scores >= self._min_score)
        if candidates.size == 0:
            return []

        boxes = decode_boxes(loc[candidates], priors[candidates]) * size / detection_input.scale
        points = decode_landmarks(landms[candidates], priors[candidates]) * size / detection_input.scale
        kept = nms(boxes, scores[candidates], self._nms_threshold)
        logger.debug("%s: %d candidates, %d after NMS", self._model_name, candidates.size, len(kept))

        return [
            RawDetection(
                bbox=boxes[i].astype(np.float32),
                score=float(scores[candidates][i]),
                landmarks=points[i].astype(np.float32),
            )
            for i in kept
        ]

    @staticmethod
    def _split_outputs(
        outputs: list[NDArray[np.float32]],
    ) -> tuple[NDArray[np.float32], NDArray[np.float32], NDArray[np.float32]]:
        by_width: dict[int, NDArray[np.float32]] = {}
        for output in outputs:
            arr = np.asarray(output, dtype=np.float32)
            by_width[int(arr.shape[-1])] = arr.reshape(-1, arr.shape[-1])
        try:
            return by_width[4], by_width[2], by_width[10]
        except KeyError:
            shapes = [np.shape(o) for o in outputs]
            raise RuntimeError(f"Unexpected RetinaFace output shapes: {shapes}") from None
