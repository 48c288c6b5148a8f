"""Integer rectangles shared by the resizer, composers, and anchor generator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from maskprep.ml.errors import ConstructionError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


@dataclass(frozen=True)
class Bounds:
    """Pixel rectangle (min_x, min_y, max_x, max_y), max edges exclusive."""

    min_x: int
    min_y: int
    max_x: int
    max_y: int

    def __post_init__(self) -> None:
        if self.max_x < self.min_x or self.max_y < self.min_y:
            raise ConstructionError(f"Bounds have negative extent: {self}")

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y

    def as_window(self) -> tuple[int, int, int, int]:
        """Return the rectangle in (y1, x1, y2, x2) order."""
        return (self.min_y, self.min_x, self.max_y, self.max_x)

    @classmethod
    def of(cls, image: NDArray[np.generic]) -> Bounds:
        """Bounds of an HxWxC image array, anchored at the origin."""
        height, width = image.shape[:2]
        return cls(0, 0, int(width), int(height))


@dataclass(frozen=True)
class ResizedImage:
    """A resized RGB uint8 image together with its bounds."""

    pixels: NDArray[np.uint8]
    bounds: Bounds
