"""Feature pyramid anchor generation.

Anchors are (y1, x1, y2, x2) boxes in resized-image pixels. The order of the
output is a positional contract with the detector's RPN head:

    level (ascending scale) -> feature-map row -> column -> ratio

For the default tables and a 1024x1024 input, the first three anchors are
the three ratios centred on (0, 0) of the stride-4 level:

    [-22.63, -11.31, 22.63, 11.31]
    [-16.00, -16.00, 16.00, 16.00]
    [-11.31, -22.63, 11.31, 22.63]
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from maskprep.ml.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from maskprep.ml.geometry import Bounds

DEFAULT_BACKBONE_STRIDES: tuple[int, ...] = (4, 8, 16, 32, 64)
DEFAULT_ANCHOR_SCALES: tuple[int, ...] = (32, 64, 128, 256, 512)
DEFAULT_ANCHOR_RATIOS: tuple[float, ...] = (0.5, 1.0, 2.0)


@dataclass(frozen=True)
class AnchorConfig:
    """Pyramid tables: one stride and one scale per level, ratios shared."""

    backbone_strides: tuple[int, ...] = DEFAULT_BACKBONE_STRIDES
    scales: tuple[int, ...] = DEFAULT_ANCHOR_SCALES
    ratios: tuple[float, ...] = DEFAULT_ANCHOR_RATIOS
    anchor_stride: int = 1

    def __post_init__(self) -> None:
        if not self.backbone_strides:
            raise ConfigurationError("backbone_strides must not be empty")
        if not self.ratios:
            raise ConfigurationError("anchor ratios must not be empty")
        if len(self.backbone_strides) != len(self.scales):
            raise ConfigurationError(
                f"Got {len(self.backbone_strides)} backbone strides but {len(self.scales)} anchor scales"
            )
        if any(s <= 0 for s in self.backbone_strides):
            raise ConfigurationError(f"Backbone strides must be positive: {self.backbone_strides}")
        if any(s <= 0 for s in self.scales):
            raise ConfigurationError(f"Anchor scales must be positive: {self.scales}")
        if any(r <= 0 for r in self.ratios):
            raise ConfigurationError(f"Anchor ratios must be positive: {self.ratios}")
        if self.anchor_stride < 1:
            raise ConfigurationError(f"anchor_stride must be >= 1, got {self.anchor_stride}")


@dataclass(frozen=True)
class FeatureLevel:
    """One pyramid level: backbone stride, anchor scale, feature-map shape."""

    stride: int
    scale: int
    rows: int
    cols: int

    def anchor_count(self, ratio_count: int, anchor_stride: int = 1) -> int:
        emitted_rows = math.ceil(self.rows / anchor_stride)
        emitted_cols = math.ceil(self.cols / anchor_stride)
        return emitted_rows * emitted_cols * ratio_count


def compute_backbone_shapes(bounds: Bounds, backbone_strides: Sequence[int]) -> list[tuple[int, int]]:
    """Feature-map (rows, cols) per stride: ceil(H / s), ceil(W / s)."""
    for stride in backbone_strides:
        if stride <= 0:
            raise ConfigurationError(f"Backbone strides must be positive: {tuple(backbone_strides)}")
    return [(math.ceil(bounds.height / s), math.ceil(bounds.width / s)) for s in backbone_strides]


def feature_levels(bounds: Bounds, config: AnchorConfig) -> list[FeatureLevel]:
    shapes = compute_backbone_shapes(bounds, config.backbone_strides)
    return [
        FeatureLevel(stride=stride, scale=scale, rows=rows, cols=cols)
        for stride, scale, (rows, cols) in zip(config.backbone_strides, config.scales, shapes, strict=True)
    ]


def generate_anchors(
    scale: int,
    ratios: Sequence[float],
    shape: tuple[int, int],
    feature_stride: int,
    anchor_stride: int = 1,
) -> NDArray[np.float32]:
    """Anchors for a single pyramid level.

    Args:
        scale: Anchor size in pixels (square-root of the box area).
        ratios: Width/height ratios, e.g. [0.5, 1, 2].
        shape: (rows, cols) of the feature map.
        feature_stride: Stride of the feature map relative to the image.
        anchor_stride: Emit anchors for every n-th feature-map cell.

    Returns:
        [rows * cols * len(ratios), 4] float32 array of (y1, x1, y2, x2).
    """
    if scale <= 0 or feature_stride <= 0 or anchor_stride < 1:
        raise ConfigurationError(
            f"Invalid level parameters: scale={scale}, feature_stride={feature_stride}, anchor_stride={anchor_stride}"
        )

    sqrt_ratios = np.sqrt(np.asarray(ratios, dtype=np.float64))
    heights = scale / sqrt_ratios
    widths = scale * sqrt_ratios

    shifts_y = np.arange(0, shape[0], anchor_stride, dtype=np.float64) * feature_stride
    shifts_x = np.arange(0, shape[1], anchor_stride, dtype=np.float64) * feature_stride
    # indexing="ij" keeps rows outermost, so cells are row-major.
    centers_y, centers_x = np.meshgrid(shifts_y, shifts_x, indexing="ij")

    # [cells, 1] against [ratios] broadcasts to [cells, ratios], ratio-minor.
    centers_y = centers_y.reshape(-1, 1)
    centers_x = centers_x.reshape(-1, 1)
    boxes = np.stack(
        [
            centers_y - 0.5 * heights,
            centers_x - 0.5 * widths,
            centers_y + 0.5 * heights,
            centers_x + 0.5 * widths,
        ],
        axis=-1,
    )
    return boxes.reshape(-1, 4).astype(np.float32)


def generate_pyramid_anchors(
    scales: Sequence[int],
    ratios: Sequence[float],
    feature_shapes: Sequence[tuple[int, int]],
    feature_strides: Sequence[int],
    anchor_stride: int = 1,
) -> NDArray[np.float32]:
    """Anchors for every pyramid level, concatenated in the order of scales.

    Each scale belongs to one level; every ratio is used on all levels.

    Returns:
        [N, 4] float32 array of (y1, x1, y2, x2). Anchors of scales[0] come
        first, then scales[1], and so on.
    """
    if not (len(scales) == len(feature_shapes) == len(feature_strides)):
        raise ConfigurationError(
            f"Mismatched pyramid tables: {len(scales)} scales, "
            f"{len(feature_shapes)} shapes, {len(feature_strides)} strides"
        )
    levels = [
        generate_anchors(scale, ratios, shape, stride, anchor_stride)
        for scale, shape, stride in zip(scales, feature_shapes, feature_strides, strict=True)
    ]
    if not levels:
        return np.zeros((0, 4), dtype=np.float32)
    return np.concatenate(levels, axis=0)


def get_anchors(bounds: Bounds, config: AnchorConfig) -> NDArray[np.float32]:
    """Full anchor set for an image, with a leading batch axis: [1, N, 4]."""
    shapes = compute_backbone_shapes(bounds, config.backbone_strides)
    anchors = generate_pyramid_anchors(
        config.scales,
        config.ratios,
        shapes,
        config.backbone_strides,
        config.anchor_stride,
    )
    return anchors[np.newaxis]


def leading_anchors(bounds: Bounds, config: AnchorConfig, count: int) -> NDArray[np.float32]:
    """The first `count` anchors of the pyramid, in pyramid order, as [count, 4].

    Only the feature-map rows that hold those anchors are generated.
    """
    ratio_count = len(config.ratios)
    parts: list[NDArray[np.float32]] = []
    remaining = max(count, 0)
    for level in feature_levels(bounds, config):
        if remaining == 0:
            break
        emitted_cols = math.ceil(level.cols / config.anchor_stride)
        rows_needed = math.ceil(remaining / (emitted_cols * ratio_count))
        rows = min(level.rows, rows_needed * config.anchor_stride)
        boxes = generate_anchors(level.scale, config.ratios, (rows, level.cols), level.stride, config.anchor_stride)
        parts.append(boxes[:remaining])
        remaining -= len(parts[-1])
    if not parts:
        return np.zeros((0, 4), dtype=np.float32)
    return np.concatenate(parts, axis=0)
