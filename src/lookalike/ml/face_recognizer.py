"""Face recognition (embedding) models.

Implementations: AuraFace v1 (default), ArcFace w600k_r50 (opt-in). Both take
aligned 112x112 RGB crops scaled to [-1, 1].
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np

from lookalike.ml.model_manager import ModelTask, get_model_spec

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from lookalike.ml.model_manager import ModelManager


class FaceRecognizer(Protocol):
    """Protocol for face recognition (embedding) models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def get_embeddings(self, face_crops: NDArray[np.float32]) -> NDArray[np.float32]:
        """Generate embeddings for a batch of aligned face crops.

        Args:
            face_crops: Batch of preprocessed face images, shape (N, 3, 112, 112).

        Returns:
            L2-normalized embedding vectors, shape (N, embedding_dim).
        """
        ...


def l2_normalize(vectors: NDArray[np.float32]) -> NDArray[np.float32]:
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    return (vectors / np.maximum(norms, 1e-12)).astype(np.float32)


class ArcFaceRecognizer:
    """ArcFace-family embedding model backed by a managed ONNX session."""

    def __init__(self, model_manager: ModelManager, model_name: str) -> None:
        get_model_spec(model_name, ModelTask.FACE_RECOGNITION)
        self._model_manager = model_manager
        self._model_name = model_name

    @property
    def model_name(self) -> str:
        return self._model_name

    def get_embeddings(self, face_crops: NDArray[np.float32]) -> NDArray[np.float32]:
        session = self._model_manager.get_session(self._model_name)
        input_name = session.get_inputs()[0].name
        (raw,) = session.run(None, {input_name: face_crops})[:1]
        return l2_normalize(np.asarray(raw, dtype=np.float32).reshape(face_crops.shape[0], -1))
