"""Reassemble inferred tiles into one image with weighted seam blending."""

import numpy as np

from upscaler.core.tensor import PixelTensor


def edge_ramp(length, overlap, ramp_start=True, ramp_end=True):
    """1-D blend weights for one tile axis.

    Weights rise linearly across the overlap band on each ramped edge and are
    1 in the interior. Edges lying on the output border are not ramped, since
    no neighbouring tile shares them.
    """
    weights = np.ones(length, dtype=np.float32)
    overlap = min(max(int(overlap), 0), length // 2)
    if overlap <= 0:
        return weights

    index = np.arange(length, dtype=np.float32)
    if ramp_start:
        weights = np.minimum(weights, (index + 1.0) / (overlap + 1.0))
    if ramp_end:
        weights = np.minimum(weights, (length - index) / (overlap + 1.0))
    return np.clip(weights, 0.0, 1.0)


def tile_weights(tile, output_width, output_height, overlap):
    """(height, width) weight mask: product of the horizontal and vertical ramps."""
    wx = edge_ramp(
        tile.width, overlap,
        ramp_start=tile.x > 0,
        ramp_end=tile.x + tile.width < output_width,
    )
    wy = edge_ramp(
        tile.height, overlap,
        ramp_start=tile.y > 0,
        ramp_end=tile.y + tile.height < output_height,
    )
    return np.clip(np.outer(wy, wx), 0.0, 1.0)


def merge_tiles(tiles, output_width, output_height, overlap):
    """Merge overlapping tiles into a PixelTensor of the requested size.

    Args:
        tiles: Output tiles from the inference engine (positions in output pixels)
        output_width: Width of the reconstructed image
        output_height: Height of the reconstructed image
        overlap: Blend band width in output pixels

    Returns:
        PixelTensor; pixels no tile covered stay zero
    """
    output = np.zeros((3, output_height, output_width), dtype=np.float32)
    weight_sum = np.zeros((output_height, output_width), dtype=np.float32)

    for tile in tiles:
        x0, y0 = max(tile.x, 0), max(tile.y, 0)
        x1 = min(tile.x + tile.width, output_width)
        y1 = min(tile.y + tile.height, output_height)
        if x1 <= x0 or y1 <= y0:
            continue

        mask = tile_weights(tile, output_width, output_height, overlap)
        tx0, ty0 = x0 - tile.x, y0 - tile.y
        tx1, ty1 = tx0 + (x1 - x0), ty0 + (y1 - y0)
        mask = mask[ty0:ty1, tx0:tx1]

        output[:, y0:y1, x0:x1] += tile.data[:, ty0:ty1, tx0:tx1] * mask
        weight_sum[y0:y1, x0:x1] += mask

    covered = weight_sum > 0
    output[:, covered] /= weight_sum[covered]
    return PixelTensor(output_width, output_height, output)


def output_ratio(input_tiles, output_tiles):
    """Per-axis output/input pixel ratio the engine actually produced.

    Models may use a fixed ratio that differs from the requested scale, so the
    merger sizes its output from this rather than from the request.
    """
    if not input_tiles or not output_tiles:
        return 1, 1
    source, result = input_tiles[0], output_tiles[0]
    scale_x = max(1, result.width // max(1, source.width))
    scale_y = max(1, result.height // max(1, source.height))
    return scale_x, scale_y
