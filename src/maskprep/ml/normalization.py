"""Pixel normalization schemes.

Each pretrained model family expects its own intensity mapping. Schemes are
strategies looked up by name so the tensor composer never branches on them:

    centered         (v - 127.5) / 127.5, RGB order   -> [-1, 1]
    mean_subtracted  v - mean_c, BGR order            -> raw scale, zero-mean
"""

from __future__ import annotations

from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol

import numpy as np

from maskprep.ml.errors import ConfigurationError, ConstructionError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from numpy.typing import NDArray

# Per-channel means in (B, G, R) order for Caffe-trained ImageNet backbones.
CAFFE_BGR_MEANS: tuple[float, float, float] = (103.939, 116.779, 123.68)


def to_bytes(samples: NDArray[np.generic]) -> NDArray[np.uint8]:
    """Extract 8-bit channel values from uint8 or 16-bit-scaled uint16 samples."""
    if samples.dtype == np.uint8:
        return samples
    if samples.dtype == np.uint16:
        return (samples >> 8).astype(np.uint8)
    raise ConstructionError(f"Unsupported sample dtype {samples.dtype}, expected uint8 or uint16")


class PixelNormalizer(Protocol):
    """Protocol for per-pixel normalization strategies."""

    @property
    def name(self) -> str:
        """Return the scheme identifier."""
        ...

    def normalize(self, samples: NDArray[np.generic]) -> NDArray[np.float32]:
        """Normalize RGB samples.

        Args:
            samples: (..., 3) array of uint8 or uint16 RGB samples.

        Returns:
            float32 array of the same shape, channels in the model's order.
        """
        ...


class CenteredNormalizer:
    """Maps [0, 255] onto [-1, 1], keeping RGB order."""

    name = "centered"

    def normalize(self, samples: NDArray[np.generic]) -> NDArray[np.float32]:
        values = to_bytes(samples).astype(np.float32)
        return (values - np.float32(127.5)) / np.float32(127.5)


class MeanSubtractedNormalizer:
    """Swaps RGB to BGR and subtracts per-channel means."""

    name = "mean_subtracted"

    def __init__(self, bgr_means: tuple[float, float, float] = CAFFE_BGR_MEANS) -> None:
        if len(bgr_means) != 3:
            raise ConfigurationError(f"Expected 3 channel means, got {len(bgr_means)}")
        self._means = np.asarray(bgr_means, dtype=np.float32)

    @property
    def bgr_means(self) -> tuple[float, ...]:
        return tuple(float(m) for m in self._means)

    def normalize(self, samples: NDArray[np.generic]) -> NDArray[np.float32]:
        values = to_bytes(samples)[..., ::-1].astype(np.float32)
        return values - self._means


# Read-only; callers wanting extra schemes pass their own table to get_normalizer().
DEFAULT_SCHEMES: Mapping[str, Callable[[], PixelNormalizer]] = MappingProxyType(
    {
        CenteredNormalizer.name: CenteredNormalizer,
        MeanSubtractedNormalizer.name: MeanSubtractedNormalizer,
    }
)

# "tf" and "caffe" are the image mode names used by the classifier model zoo.
_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "tf": CenteredNormalizer.name,
        "caffe": MeanSubtractedNormalizer.name,
    }
)


def with_scheme(
    name: str,
    factory: Callable[[], PixelNormalizer],
    schemes: Mapping[str, Callable[[], PixelNormalizer]] = DEFAULT_SCHEMES,
) -> Mapping[str, Callable[[], PixelNormalizer]]:
    """Return a new read-only scheme table with one scheme added or replaced."""
    return MappingProxyType({**schemes, name: factory})


def available_normalizers(schemes: Mapping[str, Callable[[], PixelNormalizer]] = DEFAULT_SCHEMES) -> list[str]:
    return sorted(schemes)


def get_normalizer(
    name: str,
    schemes: Mapping[str, Callable[[], PixelNormalizer]] = DEFAULT_SCHEMES,
) -> PixelNormalizer:
    """Return a fresh normalizer for a scheme name or alias."""
    try:
        factory = schemes[_ALIASES.get(name, name)]
    except KeyError:
        raise ConfigurationError(f"unknown image mode {name!r}") from None
    return factory()
