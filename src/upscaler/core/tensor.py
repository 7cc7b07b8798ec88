"""Planar pixel buffers shared by the splitter, engine, merger and face stages.

Pixel data is a float32 numpy array of shape (3, height, width): three
contiguous channel planes (R, G, B) with values normalised to [0, 1].
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np


def _check_planes(data, width, height):
    if data.shape != (3, height, width):
        raise ValueError(
            f"Pixel data shape {data.shape} does not match (3, {height}, {width})"
        )


@dataclass
class PixelTensor:
    """A full image or frame."""

    width: int
    height: int
    data: np.ndarray
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        _check_planes(self.data, self.width, self.height)

    @classmethod
    def zeros(cls, width, height):
        return cls(width, height, np.zeros((3, height, width), dtype=np.float32))

    @classmethod
    def from_hwc(cls, array, metadata=None):
        """Build a tensor from an (H, W, 3) RGB array (uint8 or float in [0, 1])."""
        if array.dtype == np.uint8:
            array = array.astype(np.float32) / 255.0
        planes = np.ascontiguousarray(np.transpose(array, (2, 0, 1)), dtype=np.float32)
        height, width = array.shape[:2]
        return cls(width, height, planes, dict(metadata or {}))

    def to_hwc_uint8(self):
        """Return an (H, W, 3) uint8 RGB array, clamped and rounded."""
        clipped = np.clip(self.data, 0.0, 1.0)
        return np.round(np.transpose(clipped, (1, 2, 0)) * 255.0).astype(np.uint8)

    def with_data(self, data):
        return PixelTensor(self.width, self.height, data, dict(self.metadata))


@dataclass
class Tile:
    """A sub-region of a parent tensor, positioned in the parent's coordinates.

    The tile's own data always matches its own width/height, even where the
    tile extends past the parent's edge (those pixels are zero).
    """

    x: int
    y: int
    width: int
    height: int
    data: np.ndarray

    def __post_init__(self):
        _check_planes(self.data, self.width, self.height)


@dataclass(frozen=True)
class Crop:
    """Rectangle selected from an image before processing (used for preview)."""

    x: int
    y: int
    width: int
    height: int

    def clamp(self, image_width, image_height) -> Optional["Crop"]:
        x = min(max(self.x, 0), image_width)
        y = min(max(self.y, 0), image_height)
        width = min(self.width, image_width - x)
        height = min(self.height, image_height - y)
        if width <= 0 or height <= 0:
            return None
        return Crop(x, y, width, height)


def center_preview_crop(width, height, size=256):
    """Centred square crop of at most ``size`` pixels, or None for empty images."""
    side = min(size, width, height)
    if side <= 0:
        return None
    return Crop(max(0, (width - side) // 2), max(0, (height - side) // 2), side, side)
