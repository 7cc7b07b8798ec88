"""Tiled AI image and video upscaling.

This package provides tools for:
- Tiled super-resolution of images with seam blending
- Face detection, alignment and refinement on upscaled images
- Video upscaling through ffmpeg decode/encode
"""

__version__ = "0.1.0"
