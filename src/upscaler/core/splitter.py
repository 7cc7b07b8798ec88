"""Split an image into overlapping tiles sized for the inference engine."""

import numpy as np

from upscaler.core.tensor import Tile


def tile_positions(length, tile_size, stride):
    """Start offsets along one axis.

    Walks with ``stride`` and pulls the last tile back so it ends on the edge.
    When the axis is shorter than a tile a single tile starts at 0.
    """
    if length <= 0:
        return []
    if length <= tile_size:
        return [0]

    positions = []
    pos = 0
    while True:
        if pos + tile_size >= length:
            positions.append(length - tile_size)
            break
        positions.append(pos)
        pos += stride
    return positions


def extract_tile(image, x, y, width, height):
    """Copy a region out of the image planes, zero-filling outside the image."""
    data = np.zeros((3, height, width), dtype=np.float32)
    src_x0, src_y0 = max(x, 0), max(y, 0)
    src_x1 = min(x + width, image.width)
    src_y1 = min(y + height, image.height)
    if src_x1 > src_x0 and src_y1 > src_y0:
        data[:, src_y0 - y:src_y1 - y, src_x0 - x:src_x1 - x] = (
            image.data[:, src_y0:src_y1, src_x0:src_x1]
        )
    return Tile(x, y, width, height, data)


def split_tiles(image, tile_size, overlap):
    """Partition an image into an ordered (row-major) list of tiles.

    Args:
        image: Source PixelTensor
        tile_size: Square tile side; 0 or None yields one tile for the whole image
        overlap: Requested overlap, clamped to a quarter of the tile size

    Returns:
        list of Tile covering the whole image
    """
    if image.width <= 0 or image.height <= 0:
        return []

    if not tile_size or tile_size <= 0:
        return [Tile(0, 0, image.width, image.height, image.data.copy())]

    overlap = clamp_overlap(tile_size, overlap)
    stride = max(1, tile_size - 2 * overlap)

    tiles = []
    for y in tile_positions(image.height, tile_size, stride):
        for x in tile_positions(image.width, tile_size, stride):
            tiles.append(extract_tile(image, x, y, tile_size, tile_size))
    return tiles


def clamp_overlap(tile_size, overlap):
    """Overlap the splitter actually uses for a given tile size."""
    if not tile_size or tile_size <= 0:
        return 0
    return min(max(int(overlap or 0), 0), tile_size // 4)
