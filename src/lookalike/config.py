"""Environment-based configuration for Lookalike."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from LOOKALIKE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LOOKALIKE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    face_detection_model: str = "retinaface_resnet34"
    face_recognition_model: str = "auraface_v1"
    accept_insightface_license: bool = False
    models_dir: str = "models"

    # Detection tuning
    detection_size: int = Field(default=640, ge=32)
    min_face_score: float = Field(default=0.5, ge=0.0, le=1.0)
    nms_threshold: float = Field(default=0.4, ge=0.0, le=1.0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Matching: Euclidean distance between L2-normalized embeddings (range 0-2)
    match_threshold: float = Field(default=1.1, ge=0.0)
    references_dir: str | None = None
    references_file: str | None = None


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
