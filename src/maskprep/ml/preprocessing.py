"""Image decoding, validation, and fixed-resolution resizing.

Images travel through the pipeline as HxWxC numpy arrays in RGB order,
either uint8 or 16-bit-scaled uint16. Resizing always produces RGB uint8.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from maskprep.ml.errors import ConstructionError
from maskprep.ml.geometry import Bounds, ResizedImage
from maskprep.ml.normalization import to_bytes

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


def validate_image(image: NDArray[np.generic]) -> NDArray[np.generic]:
    """Check that an array is a non-degenerate RGB(A) image.

    Returns:
        The first three channels of the image.

    Raises:
        ConstructionError: On wrong rank, too few channels, unsupported
            dtype, or a zero height/width.
    """
    if not isinstance(image, np.ndarray) or image.ndim != 3:
        shape = getattr(image, "shape", None)
        raise ConstructionError(f"Expected an HxWxC image array, got shape {shape}")
    height, width, channels = image.shape
    if channels < 3:
        raise ConstructionError(f"Expected at least 3 channels, got {channels}")
    if image.dtype not in (np.uint8, np.uint16):
        raise ConstructionError(f"Unsupported sample dtype {image.dtype}, expected uint8 or uint16")
    if height == 0 or width == 0:
        raise ConstructionError(f"Image has a zero dimension ({width}x{height})")
    return image[..., :3]


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow understands).
        max_pixels: Reject images with more pixels than this.

    Returns:
        HxWx3 RGB uint8 numpy array with EXIF orientation applied.

    Raises:
        ConstructionError: If the image cannot be decoded or exceeds size limits.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise ConstructionError(f"Image has {width * height} pixels, limit is {max_pixels}")
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ConstructionError(f"Cannot decode image: {exc}") from exc

    return np.asarray(rgb, dtype=np.uint8)


class ImageResizer(Protocol):
    """Protocol for deterministic fixed-resolution resizers."""

    def resize(self, image: NDArray[np.generic]) -> ResizedImage:
        """Resize an image to the working resolution.

        Args:
            image: HxWxC RGB array (uint8 or uint16).

        Returns:
            The resized RGB uint8 image and its bounds.
        """
        ...


class PillowResizer:
    """Stretches images to a fixed height and width with bilinear resampling.

    Aspect ratio is not preserved, so the whole resized canvas is valid and
    the window equals the resized bounds.
    """

    def __init__(self, height: int, width: int) -> None:
        if height <= 0 or width <= 0:
            raise ConstructionError(f"Target size must be positive, got {width}x{height}")
        self.height = height
        self.width = width

    def resize(self, image: NDArray[np.generic]) -> ResizedImage:
        rgb = np.ascontiguousarray(to_bytes(validate_image(image)))
        if rgb.shape[:2] == (self.height, self.width):
            pixels = rgb
        else:
            resized = Image.fromarray(rgb).resize(
                (self.width, self.height),
                resample=Image.Resampling.BILINEAR,
            )
            pixels = np.asarray(resized, dtype=np.uint8)
        logger.debug("Resized %sx%s image to %sx%s", image.shape[1], image.shape[0], self.width, self.height)
        return ResizedImage(pixels=pixels, bounds=Bounds.of(pixels))
