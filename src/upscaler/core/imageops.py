"""Planar (3, H, W) float32 helpers for the face stage: resize, warp, sample, blend."""

import cv2
import numpy as np


def to_hwc(data):
    return np.ascontiguousarray(np.transpose(data, (1, 2, 0)), dtype=np.float32)


def to_planar(array):
    return np.ascontiguousarray(np.transpose(array, (2, 0, 1)), dtype=np.float32)


def crop(data, x, y, width, height):
    return data[:, y:y + height, x:x + width].copy()


def resize_bilinear(data, width, height):
    """Bilinear resize with half-pixel centres."""
    if data.shape[1:] == (height, width):
        return data.copy()
    resized = cv2.resize(to_hwc(data), (int(width), int(height)), interpolation=cv2.INTER_LINEAR)
    return to_planar(resized)


def to_signed(data):
    """[0, 1] -> [-1, 1]"""
    return data * 2.0 - 1.0


def from_signed(data):
    """[-1, 1] -> [0, 1], clamped"""
    return np.clip((data + 1.0) * 0.5, 0.0, 1.0).astype(np.float32)


def sample_bilinear(data, xs, ys):
    """Sample planar data at fractional pixel coordinates.

    Args:
        data: (3, H, W) array
        xs: Array of x coordinates
        ys: Array of y coordinates, same shape as xs

    Returns:
        (values, valid): values has shape (3,) + xs.shape and is zero where
        the coordinate falls outside the source; valid is the boolean mask
    """
    _, height, width = data.shape
    valid = (xs >= 0) & (ys >= 0) & (xs <= width - 1) & (ys <= height - 1)

    x0 = np.clip(np.floor(xs), 0, width - 1).astype(np.int64)
    y0 = np.clip(np.floor(ys), 0, height - 1).astype(np.int64)
    x1 = np.minimum(x0 + 1, width - 1)
    y1 = np.minimum(y0 + 1, height - 1)
    fx = np.clip(xs - x0, 0.0, 1.0).astype(np.float32)
    fy = np.clip(ys - y0, 0.0, 1.0).astype(np.float32)

    top = data[:, y0, x0] * (1.0 - fx) + data[:, y0, x1] * fx
    bottom = data[:, y1, x0] * (1.0 - fx) + data[:, y1, x1] * fx
    values = top * (1.0 - fy) + bottom * fy
    values[:, ~valid] = 0.0
    return values.astype(np.float32), valid


def warp_affine(data, matrix, size):
    """Fill a size x size frame by sampling ``data`` at ``matrix @ (u, v, 1)``.

    ``matrix`` maps destination coordinates into the source; samples outside
    the source are zero.
    """
    warped = cv2.warpAffine(
        to_hwc(data),
        np.asarray(matrix, dtype=np.float64),
        (int(size), int(size)),
        flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )
    return to_planar(warped)


def project_to_region(source, inverse, x, y, width, height):
    """Sample ``source`` for every pixel of an image region.

    Args:
        source: (3, S, S) canonical frame
        inverse: AffineTransform from image coordinates to source coordinates
        x, y, width, height: Region in image pixels

    Returns:
        (patch, mask): (3, height, width) values and a float mask that is 1
        where the pixel mapped inside the source
    """
    gx, gy = np.meshgrid(
        np.arange(x, x + width, dtype=np.float64),
        np.arange(y, y + height, dtype=np.float64),
    )
    us, vs = inverse.apply(gx, gy)
    patch, valid = sample_bilinear(source, us, vs)
    return patch, valid.astype(np.float32)


def feather_width(width, height):
    return float(min(max(min(width, height) / 10.0, 2.0), 32.0))


def edge_weights(width, height, feather):
    """(height, width) weights falling linearly to 0 at the patch edges."""
    feather = max(float(feather), 1e-6)
    px = np.arange(width, dtype=np.float32)
    py = np.arange(height, dtype=np.float32)
    wx = np.minimum(np.minimum(px, width - 1 - px) / feather, 1.0)
    wy = np.minimum(np.minimum(py, height - 1 - py) / feather, 1.0)
    return np.clip(np.minimum(wy[:, np.newaxis], wx[np.newaxis, :]), 0.0, 1.0).astype(np.float32)


def blend_patch(dest, patch, x, y, weights):
    """In-place: dest = dest * (1 - w) + patch * w over the patch's footprint."""
    _, height, width = patch.shape
    region = dest[:, y:y + height, x:x + width]
    region[...] = region * (1.0 - weights) + patch * weights
