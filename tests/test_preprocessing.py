"""Tests for image decoding, detector input, and face alignment."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from lookalike.config import Settings
from lookalike.errors import ImageDecodeError, InvalidInput
from lookalike.ml.preprocessing import (
    ARCFACE_TEMPLATE,
    ImagePreprocessor,
    estimate_similarity_transform,
)


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {"detection_size": 64, "max_image_pixels": 1_000_000, "max_file_size": 1_000_000}
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _encode(image: Image.Image, fmt: str = "PNG", **save_args: object) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt, **save_args)
    return buf.getvalue()


class TestDecodeImage:
    def test_decodes_rgb(self) -> None:
        data = _encode(Image.new("RGB", (40, 20), (10, 20, 30)))
        image = ImagePreprocessor(_make_settings()).decode_image(data)
        assert image.shape == (20, 40, 3)
        assert image.dtype == np.uint8
        assert tuple(image[0, 0]) == (10, 20, 30)

    def test_converts_grayscale_and_alpha(self) -> None:
        pre = ImagePreprocessor(_make_settings())
        assert pre.decode_image(_encode(Image.new("L", (8, 8), 128))).shape == (8, 8, 3)
        assert pre.decode_image(_encode(Image.new("RGBA", (8, 8), (1, 2, 3, 4)))).shape == (8, 8, 3)

    def test_applies_exif_orientation(self) -> None:
        exif = Image.Exif()
        exif[0x0112] = 6  # rotate 90 CW on display
        data = _encode(Image.new("RGB", (40, 20)), "JPEG", exif=exif)
        image = ImagePreprocessor(_make_settings()).decode_image(data)
        assert image.shape == (40, 20, 3)

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ImageDecodeError) as excinfo:
            ImagePreprocessor(_make_settings()).decode_image(b"definitely not an image")
        assert excinfo.value.too_large is False

    def test_rejects_empty(self) -> None:
        with pytest.raises(ImageDecodeError, match="Empty"):
            ImagePreprocessor(_make_settings()).decode_image(b"")

    def test_rejects_large_file(self) -> None:
        data = _encode(Image.new("RGB", (16, 16)))
        with pytest.raises(ImageDecodeError) as excinfo:
            ImagePreprocessor(_make_settings(max_file_size=10)).decode_image(data)
        assert excinfo.value.too_large is True

    def test_rejects_too_many_pixels(self) -> None:
        data = _encode(Image.new("RGB", (100, 100)))
        with pytest.raises(ImageDecodeError, match="pixels") as excinfo:
            ImagePreprocessor(_make_settings(max_image_pixels=9_999)).decode_image(data)
        assert excinfo.value.too_large is True

    def test_decode_error_is_invalid_input(self) -> None:
        assert issubclass(ImageDecodeError, InvalidInput)


class TestDetectionInput:
    def test_letterboxes_wide_image(self) -> None:
        image = np.full((50, 100, 3), 200, dtype=np.uint8)
        result = ImagePreprocessor(_make_settings(detection_size=64)).preprocess_for_detection(image)
        assert result.tensor.shape == (1, 3, 64, 64)
        assert result.tensor.dtype == np.float32
        assert result.scale == pytest.approx(0.64)
        # Padding rows below the resized image are zero before mean subtraction.
        np.testing.assert_allclose(result.tensor[0, :, 63, 0], [-104.0, -117.0, -123.0])

    def test_channels_are_bgr_mean_subtracted(self) -> None:
        image = np.zeros((64, 64, 3), dtype=np.uint8)
        image[..., 0] = 255  # red
        tensor = ImagePreprocessor(_make_settings(detection_size=64)).preprocess_for_detection(image).tensor
        assert tensor[0, 2, 10, 10] == pytest.approx(255.0 - 123.0)
        assert tensor[0, 0, 10, 10] == pytest.approx(-104.0)


class TestAlignment:
    def test_similarity_transform_recovers_known_mapping(self) -> None:
        angle = np.deg2rad(20)
        scale = 1.7
        rotation = np.array([[np.cos(angle), -np.sin(angle)], [np.sin(angle), np.cos(angle)]])
        src = ARCFACE_TEMPLATE.astype(np.float64)
        dst = scale * src @ rotation.T + np.array([5.0, -3.0])

        matrix = estimate_similarity_transform(src, dst)

        np.testing.assert_allclose(matrix[:, :2], scale * rotation, atol=1e-6)
        np.testing.assert_allclose(matrix[:, 2], [5.0, -3.0], atol=1e-6)

    def test_degenerate_landmarks_raise(self) -> None:
        with pytest.raises(InvalidInput, match="degenerate"):
            estimate_similarity_transform(np.ones((5, 2), dtype=np.float32), ARCFACE_TEMPLATE)

    def test_identity_alignment_keeps_crop(self) -> None:
        rng = np.random.default_rng(0)
        image = rng.integers(0, 255, size=(112, 112, 3), dtype=np.uint8)
        crop = ImagePreprocessor(_make_settings()).align_face(image, ARCFACE_TEMPLATE)
        assert crop.shape == (112, 112, 3)
        np.testing.assert_allclose(crop[20:90, 20:90].astype(int), image[20:90, 20:90].astype(int), atol=2)

    def test_recognition_tensor_is_normalized(self) -> None:
        image = np.full((200, 200, 3), 255, dtype=np.uint8)
        landmarks = ARCFACE_TEMPLATE + 40.0
        tensor = ImagePreprocessor(_make_settings()).preprocess_for_recognition(image, landmarks)
        assert tensor.shape == (1, 3, 112, 112)
        assert tensor.max() <= 1.0
        assert tensor.min() >= -1.0
        assert tensor[0, :, 56, 56] == pytest.approx([1.0, 1.0, 1.0])
