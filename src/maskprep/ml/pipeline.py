"""Orchestrates resize -> pixel tensor, metadata, anchors for one image.

Every call works on private inputs and returns fresh arrays, so a single
InputPipeline can be shared by any number of worker threads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

import numpy as np

from maskprep.ml.anchors import AnchorConfig, get_anchors
from maskprep.ml.composer import compose_image_meta, compose_image_tensor
from maskprep.ml.errors import ConfigurationError
from maskprep.ml.geometry import Bounds
from maskprep.ml.normalization import get_normalizer
from maskprep.ml.preprocessing import PillowResizer, validate_image

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from maskprep.config import Settings
    from maskprep.ml.normalization import PixelNormalizer
    from maskprep.ml.preprocessing import ImageResizer

logger = logging.getLogger(__name__)

AnchorMode = Literal["pyramid", "window"]

INPUT_IMAGE = "input_image"
INPUT_IMAGE_META = "input_image_meta"
INPUT_ANCHORS = "input_anchors"


@dataclass(frozen=True)
class DetectorInputs:
    """The three named tensors a Mask R-CNN graph consumes, plus geometry."""

    image: NDArray[np.float32]
    image_meta: NDArray[np.float32]
    anchors: NDArray[np.float32]
    original: Bounds
    resized: Bounds
    window: Bounds
    scale: float

    def as_feed(self) -> dict[str, NDArray[np.float32]]:
        """Return the inputs keyed by graph input name."""
        return {
            INPUT_IMAGE: self.image,
            INPUT_IMAGE_META: self.image_meta,
            INPUT_ANCHORS: self.anchors,
        }


class InputPipeline:
    """Turns an arbitrary-size image into detector-ready tensors.

    Args:
        resizer: Maps images onto the fixed working resolution.
        normalizer: Pixel normalization scheme for the image tensor.
        anchor_config: Pyramid tables, validated on construction.
        num_classes: Length of the class-activity segment of the metadata.
        anchor_mode: "pyramid" emits the full anchor set; "window" emits the
            single valid-window box some exported graphs were traced with.
    """

    def __init__(
        self,
        resizer: ImageResizer,
        normalizer: PixelNormalizer,
        anchor_config: AnchorConfig | None = None,
        num_classes: int = 81,
        anchor_mode: AnchorMode = "pyramid",
    ) -> None:
        if num_classes < 0:
            raise ConfigurationError(f"num_classes must be >= 0, got {num_classes}")
        if anchor_mode not in ("pyramid", "window"):
            raise ConfigurationError(f"Unknown anchor mode {anchor_mode!r}")
        self.resizer = resizer
        self.normalizer = normalizer
        self.anchor_config = anchor_config if anchor_config is not None else AnchorConfig()
        self.num_classes = num_classes
        self.anchor_mode = anchor_mode

    @classmethod
    def from_settings(cls, settings: Settings) -> InputPipeline:
        """Build a pipeline, failing fast on invalid configuration."""
        return cls(
            resizer=PillowResizer(settings.target_height, settings.target_width),
            normalizer=get_normalizer(settings.normalization),
            anchor_config=settings.anchor_config(),
            num_classes=settings.num_classes,
            anchor_mode=settings.anchor_mode,
        )

    def prepare(self, image: NDArray[np.generic], image_id: int = 0) -> DetectorInputs:
        """Resize an image and build its pixel tensor, metadata, and anchors.

        Raises:
            ConstructionError: If the image is malformed or has a zero dimension.
        """
        original = Bounds.of(validate_image(image))
        resized = self.resizer.resize(image)

        image_tensor = compose_image_tensor(resized.pixels, self.normalizer)

        # The resizer stretches without padding, so the whole canvas is valid.
        window = resized.bounds
        scale = float(np.float32(resized.bounds.height) / np.float32(original.height))
        meta = compose_image_meta(image_id, original, resized.bounds, window, scale, self.num_classes)

        anchors = self.build_anchors(resized.bounds, window)

        logger.debug(
            "Prepared image %s: %sx%s -> %sx%s, %d anchors",
            image_id,
            original.width,
            original.height,
            resized.bounds.width,
            resized.bounds.height,
            anchors.shape[1],
        )
        return DetectorInputs(
            image=image_tensor,
            image_meta=meta,
            anchors=anchors,
            original=original,
            resized=resized.bounds,
            window=window,
            scale=scale,
        )

    def build_anchors(self, resized: Bounds, window: Bounds) -> NDArray[np.float32]:
        if self.anchor_mode == "window":
            return np.asarray([[window.as_window()]], dtype=np.float32)
        return get_anchors(resized, self.anchor_config)
