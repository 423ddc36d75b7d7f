"""Tests for RetinaFace decoding, the ArcFace recognizer, and the embedding service."""

from __future__ import annotations

import io
from types import SimpleNamespace
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from lookalike.config import Settings
from lookalike.errors import ImageDecodeError, NoFaceDetected
from lookalike.ml.embedding_service import FaceEmbeddingService
from lookalike.ml.face_detector import RawDetection, RetinaFaceDetector, decode_boxes, nms, prior_boxes
from lookalike.ml.face_recognizer import ArcFaceRecognizer, l2_normalize
from lookalike.ml.preprocessing import ARCFACE_TEMPLATE, DetectionInput, ImagePreprocessor

if TYPE_CHECKING:
    from numpy.typing import NDArray

SIZE = 32


def _session(outputs: list[NDArray[np.float32]]) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input")]
    session.run.return_value = outputs
    return session


def _manager(session: MagicMock) -> MagicMock:
    manager = MagicMock()
    manager.get_session.return_value = session
    return manager


def _retinaface_outputs(hits: dict[int, float]) -> list[NDArray[np.float32]]:
    """Zero regressions everywhere; ``hits`` maps anchor index -> face score."""
    n = prior_boxes(SIZE).shape[0]
    loc = np.zeros((1, n, 4), dtype=np.float32)
    conf = np.tile(np.array([1.0, 0.0], dtype=np.float32), (1, n, 1))
    landms = np.zeros((1, n, 10), dtype=np.float32)
    for index, score in hits.items():
        conf[0, index] = [1.0 - score, score]
    return [loc, conf, landms]


def _detection_input(scale: float = 1.0) -> DetectionInput:
    return DetectionInput(tensor=np.zeros((1, 3, SIZE, SIZE), dtype=np.float32), scale=scale)


class TestPriors:
    def test_anchor_count(self) -> None:
        # 4x4 cells at stride 8, 2x2 at 16, 1x1 at 32; two sizes each
        assert prior_boxes(SIZE).shape == ((16 + 4 + 1) * 2, 4)

    def test_first_anchor(self) -> None:
        np.testing.assert_allclose(prior_boxes(SIZE)[0], [4 / 32, 4 / 32, 16 / 32, 16 / 32])

    def test_zero_regression_decodes_to_anchor(self) -> None:
        priors = prior_boxes(SIZE)[:1]
        boxes = decode_boxes(np.zeros((1, 4), dtype=np.float32), priors)
        np.testing.assert_allclose(boxes[0], [-4 / 32, -4 / 32, 12 / 32, 12 / 32])


class TestNms:
    def test_suppresses_overlaps(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [1, 1, 10, 10], [20, 20, 30, 30]], dtype=np.float32)
        scores = np.array([0.8, 0.9, 0.7], dtype=np.float32)
        assert nms(boxes, scores, 0.4) == [1, 2]

    def test_keeps_disjoint(self) -> None:
        boxes = np.array([[0, 0, 1, 1], [5, 5, 6, 6]], dtype=np.float32)
        assert nms(boxes, np.array([0.5, 0.6], dtype=np.float32), 0.4) == [1, 0]


class TestRetinaFaceDetector:
    def test_returns_faces_above_threshold_best_first(self) -> None:
        n = prior_boxes(SIZE).shape[0]
        last = n - 1  # the large anchor at stride 32
        session = _session(_retinaface_outputs({0: 0.7, last: 0.95, 5: 0.3}))
        detector = RetinaFaceDetector(_manager(session), "retinaface_resnet34", min_score=0.5)

        detections = detector.detect(_detection_input())

        assert [round(d.score, 2) for d in detections] == [0.95, 0.7]
        np.testing.assert_allclose(detections[1].bbox, [-4.0, -4.0, 12.0, 12.0], atol=1e-4)
        assert detections[0].landmarks.shape == (5, 2)
        session.run.assert_called_once()

    def test_rescales_to_original_image(self) -> None:
        session = _session(_retinaface_outputs({0: 0.9}))
        detector = RetinaFaceDetector(_manager(session), "retinaface_resnet34")
        (detection,) = detector.detect(_detection_input(scale=0.5))
        np.testing.assert_allclose(detection.bbox, [-8.0, -8.0, 24.0, 24.0], atol=1e-4)
        np.testing.assert_allclose(detection.landmarks[0], [8.0, 8.0], atol=1e-4)

    def test_no_faces(self) -> None:
        detector = RetinaFaceDetector(_manager(_session(_retinaface_outputs({}))), "retinaface_mobilenetv2")
        assert detector.detect(_detection_input()) == []

    def test_output_order_does_not_matter(self) -> None:
        loc, conf, landms = _retinaface_outputs({0: 0.9})
        detector = RetinaFaceDetector(_manager(_session([landms, conf, loc])), "retinaface_resnet34")
        assert len(detector.detect(_detection_input())) == 1

    def test_unexpected_outputs_raise(self) -> None:
        detector = RetinaFaceDetector(_manager(_session([np.zeros((1, 5, 3))])), "retinaface_resnet34")
        with pytest.raises(RuntimeError, match="Unexpected RetinaFace output"):
            detector.detect(_detection_input())

    def test_anchor_count_mismatch_raises(self) -> None:
        outputs = [np.zeros((1, 7, 4)), np.zeros((1, 7, 2)), np.zeros((1, 7, 10))]
        detector = RetinaFaceDetector(_manager(_session(outputs)), "retinaface_resnet34")
        with pytest.raises(RuntimeError, match="anchors"):
            detector.detect(_detection_input())

    def test_rejects_recognition_model(self) -> None:
        with pytest.raises(ValueError, match="not face_detection"):
            RetinaFaceDetector(MagicMock(), "auraface_v1")


class TestArcFaceRecognizer:
    def test_embeddings_are_l2_normalized(self) -> None:
        raw = np.array([[3.0, 4.0, 0.0], [0.0, 0.0, 2.0]], dtype=np.float32)
        session = _session([raw])
        recognizer = ArcFaceRecognizer(_manager(session), "auraface_v1")

        crops = np.zeros((2, 3, 112, 112), dtype=np.float32)
        embeddings = recognizer.get_embeddings(crops)

        np.testing.assert_allclose(embeddings, [[0.6, 0.8, 0.0], [0.0, 0.0, 1.0]], atol=1e-6)
        _, feeds = session.run.call_args.args
        assert feeds["input"] is crops

    def test_l2_normalize_handles_zero_vector(self) -> None:
        assert np.all(l2_normalize(np.zeros((1, 4), dtype=np.float32)) == 0.0)

    def test_rejects_unknown_model(self) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            ArcFaceRecognizer(MagicMock(), "nope")


class StubDetector:
    model_name = "stub"

    def __init__(self, detections: list[RawDetection]) -> None:
        self.detections = detections

    def detect(self, detection_input: DetectionInput) -> list[RawDetection]:
        return self.detections


class StubRecognizer:
    model_name = "stub"

    def get_embeddings(self, face_crops: NDArray[np.float32]) -> NDArray[np.float32]:
        assert face_crops.shape == (1, 3, 112, 112)
        return np.array([[0.0, 1.0]], dtype=np.float32)


def _png(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (120, 110, 100)).save(buf, format="PNG")
    return buf.getvalue()


def _service(detections: list[RawDetection]) -> FaceEmbeddingService:
    preprocessor = ImagePreprocessor(Settings(detection_size=64))
    return FaceEmbeddingService(preprocessor, StubDetector(detections), StubRecognizer())


class TestFaceEmbeddingService:
    def test_embeds_highest_scoring_face(self) -> None:
        weak = RawDetection(
            bbox=np.array([0, 0, 10, 10], dtype=np.float32), score=0.6, landmarks=ARCFACE_TEMPLATE / 10
        )
        strong = RawDetection(
            bbox=np.array([50, 25, 150, 75], dtype=np.float32), score=0.9, landmarks=ARCFACE_TEMPLATE + 20
        )
        face = _service([weak, strong]).embed_primary_face(_png(200, 100))

        assert face.score == pytest.approx(0.9)
        assert (face.x, face.y, face.width, face.height) == pytest.approx((0.25, 0.25, 0.5, 0.5))
        np.testing.assert_allclose(face.embedding, [0.0, 1.0])

    def test_box_is_clipped_to_image(self) -> None:
        det = RawDetection(bbox=np.array([-20, -10, 250, 90], dtype=np.float32), score=0.9, landmarks=ARCFACE_TEMPLATE)
        face = _service([det]).embed_primary_face(_png(200, 100))
        assert (face.x, face.y, face.width, face.height) == pytest.approx((0.0, 0.0, 1.0, 0.9))

    def test_no_face_raises(self) -> None:
        with pytest.raises(NoFaceDetected):
            _service([]).detect_embedding(_png(32, 32))

    def test_degenerate_landmarks_fall_back_to_next_face(self) -> None:
        collapsed = RawDetection(
            bbox=np.array([0, 0, 50, 50], dtype=np.float32),
            score=0.95,
            landmarks=np.full((5, 2), 5.0, dtype=np.float32),
        )
        usable = RawDetection(
            bbox=np.array([50, 25, 150, 75], dtype=np.float32), score=0.7, landmarks=ARCFACE_TEMPLATE + 20
        )
        face = _service([collapsed, usable]).embed_primary_face(_png(200, 100))
        assert face.score == pytest.approx(0.7)

    def test_only_degenerate_landmarks_is_no_face(self) -> None:
        collapsed = RawDetection(
            bbox=np.array([0, 0, 50, 50], dtype=np.float32),
            score=0.95,
            landmarks=np.full((5, 2), 5.0, dtype=np.float32),
        )
        with pytest.raises(NoFaceDetected):
            _service([collapsed]).detect_embedding(_png(64, 64))

    def test_undecodable_image_raises(self) -> None:
        with pytest.raises(ImageDecodeError):
            _service([]).detect_embedding(b"not an image")

    def test_from_settings_wires_configured_models(self) -> None:
        settings = Settings(face_detection_model="retinaface_mobilenetv2", face_recognition_model="auraface_v1")
        service = FaceEmbeddingService.from_settings(settings, MagicMock())
        assert service._detector.model_name == "retinaface_mobilenetv2"
        assert service._recognizer.model_name == "auraface_v1"
