"""Builds the pixel tensor and the image metadata vector fed to the detector."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from maskprep.ml.errors import ConstructionError
from maskprep.ml.preprocessing import validate_image

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from maskprep.ml.geometry import Bounds
    from maskprep.ml.normalization import PixelNormalizer

# image_id, original (h, w, depth), resized (h, w, depth), window (4), scale
META_FIXED_FIELDS = 12
IMAGE_DEPTH = 3


def compose_image_tensor(image: NDArray[np.generic], normalizer: PixelNormalizer) -> NDArray[np.float32]:
    """Normalize every pixel of an image into a (1, H, W, 3) float32 tensor.

    Raises:
        ConstructionError: If the image is degenerate or the normalizer
            returns an unexpected shape.
    """
    rgb = validate_image(image)
    height, width = rgb.shape[:2]

    normalized = normalizer.normalize(rgb)
    if normalized.shape != (height, width, IMAGE_DEPTH):
        raise ConstructionError(
            f"Normalizer {normalizer.name!r} returned shape {normalized.shape}, expected {(height, width, IMAGE_DEPTH)}"
        )
    return np.ascontiguousarray(normalized, dtype=np.float32)[np.newaxis]


def compose_image_meta(
    image_id: int,
    original: Bounds,
    resized: Bounds,
    window: Bounds,
    scale: float,
    num_classes: int,
) -> NDArray[np.float32]:
    """Assemble the (1, 12 + num_classes) image metadata vector.

    Field order:
        [image_id, orig_h, orig_w, 3, resized_h, resized_w, 3,
         window_y1, window_x1, window_y2, window_x2, scale,
         class_active_0 ... class_active_{num_classes-1}]

    The class-activity segment is all zeros; callers that filter by class
    overwrite it.
    """
    if num_classes < 0:
        raise ConstructionError(f"num_classes must be >= 0, got {num_classes}")

    meta = np.zeros((1, META_FIXED_FIELDS + num_classes), dtype=np.float32)
    meta[0, :META_FIXED_FIELDS] = [
        image_id,
        original.height,
        original.width,
        IMAGE_DEPTH,
        resized.height,
        resized.width,
        IMAGE_DEPTH,
        *window.as_window(),
        scale,
    ]
    return meta


@dataclass(frozen=True)
class ImageMeta:
    """Named view of a metadata vector."""

    image_id: int
    original_shape: tuple[int, int, int]
    resized_shape: tuple[int, int, int]
    window: tuple[int, int, int, int]
    scale: float
    active_class_ids: NDArray[np.float32]


def parse_image_meta(meta: NDArray[np.float32]) -> ImageMeta:
    """Split a (1, 12 + N) or (12 + N,) metadata vector into its fields."""
    row = np.asarray(meta)
    if row.ndim == 2:
        if row.shape[0] != 1:
            raise ConstructionError(f"Expected a single metadata row, got shape {row.shape}")
        row = row[0]
    if row.ndim != 1 or row.shape[0] < META_FIXED_FIELDS:
        raise ConstructionError(f"Metadata vector too short: shape {meta.shape}")

    return ImageMeta(
        image_id=int(row[0]),
        original_shape=(int(row[1]), int(row[2]), int(row[3])),
        resized_shape=(int(row[4]), int(row[5]), int(row[6])),
        window=(int(row[7]), int(row[8]), int(row[9]), int(row[10])),
        scale=float(row[11]),
        active_class_ids=row[META_FIXED_FIELDS:],
    )
