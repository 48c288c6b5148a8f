"""Tests for image decoding, validation, and resizing."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from maskprep.ml.errors import ConstructionError
from maskprep.ml.geometry import Bounds
from maskprep.ml.preprocessing import PillowResizer, decode_image, validate_image


def _encode(img: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


class TestDecodeImage:
    def test_decodes_rgb_png(self) -> None:
        data = _encode(Image.new("RGB", (6, 4), (255, 0, 0)))
        image = decode_image(data)
        assert image.shape == (4, 6, 3)
        assert image.dtype == np.uint8
        assert image[0, 0].tolist() == [255, 0, 0]

    def test_converts_rgba_and_grayscale(self) -> None:
        assert decode_image(_encode(Image.new("RGBA", (3, 2)))).shape == (2, 3, 3)
        assert decode_image(_encode(Image.new("L", (3, 2), 128))).shape == (2, 3, 3)

    def test_garbage_rejected(self) -> None:
        with pytest.raises(ConstructionError, match="Cannot decode"):
            decode_image(b"fake image data")

    def test_pixel_limit(self) -> None:
        data = _encode(Image.new("RGB", (10, 10)))
        with pytest.raises(ConstructionError, match="limit"):
            decode_image(data, max_pixels=99)
        assert decode_image(data, max_pixels=100).shape == (10, 10, 3)


class TestValidateImage:
    def test_returns_first_three_channels(self) -> None:
        image = np.zeros((2, 2, 4), dtype=np.uint8)
        assert validate_image(image).shape == (2, 2, 3)

    @pytest.mark.parametrize(
        "image",
        [
            np.zeros((2, 2), dtype=np.uint8),
            np.zeros((2, 2, 2), dtype=np.uint8),
            np.zeros((2, 2, 3), dtype=np.float32),
            np.zeros((0, 2, 3), dtype=np.uint8),
        ],
    )
    def test_malformed_images_rejected(self, image: np.ndarray) -> None:
        with pytest.raises(ConstructionError):
            validate_image(image)

    def test_non_array_rejected(self) -> None:
        with pytest.raises(ConstructionError):
            validate_image([[0, 0, 0]])  # type: ignore[arg-type]


class TestPillowResizer:
    def test_stretches_to_target(self) -> None:
        resized = PillowResizer(800, 800).resize(np.zeros((400, 600, 3), dtype=np.uint8))
        assert resized.pixels.shape == (800, 800, 3)
        assert resized.bounds == Bounds(0, 0, 800, 800)

    def test_non_square_target(self) -> None:
        resized = PillowResizer(32, 48).resize(np.zeros((10, 10, 3), dtype=np.uint8))
        assert resized.pixels.shape == (32, 48, 3)
        assert resized.bounds.width == 48
        assert resized.bounds.height == 32

    def test_uniform_color_preserved(self) -> None:
        image = np.full((30, 50, 3), (50, 100, 150), dtype=np.uint8)
        resized = PillowResizer(64, 64).resize(image)
        assert resized.pixels[10, 20].tolist() == [50, 100, 150]

    def test_16_bit_input(self) -> None:
        image = np.full((4, 4, 3), 200 * 256, dtype=np.uint16)
        resized = PillowResizer(8, 8).resize(image)
        assert resized.pixels.dtype == np.uint8
        assert resized.pixels[0, 0].tolist() == [200, 200, 200]

    def test_same_size_is_passthrough(self) -> None:
        image = np.arange(2 * 3 * 3, dtype=np.uint8).reshape(2, 3, 3)
        resized = PillowResizer(2, 3).resize(image)
        assert np.array_equal(resized.pixels, image)

    def test_zero_dimension_rejected(self) -> None:
        with pytest.raises(ConstructionError):
            PillowResizer(8, 8).resize(np.zeros((0, 4, 3), dtype=np.uint8))

    def test_invalid_target_rejected(self) -> None:
        with pytest.raises(ConstructionError):
            PillowResizer(0, 8)
