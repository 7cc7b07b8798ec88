"""Image loading/saving and deterministic output naming."""

import logging
import os
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from upscaler.core.tensor import PixelTensor

logger = logging.getLogger(__name__)

SUPPORTED_OUTPUT_EXTENSIONS = ("jpg", "jpeg", "png", "bmp", "tiff")
DEFAULT_OUTPUT_EXTENSION = "png"

_PIL_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "bmp": "BMP",
    "tiff": "TIFF",
}


def denoise(rgb, strength):
    """Non-local means denoise of an (H, W, 3) uint8 RGB array.

    Args:
        rgb: Image array
        strength: 0..1, 0 leaves the image untouched

    Returns:
        Denoised uint8 RGB array
    """
    strength = min(max(float(strength or 0.0), 0.0), 1.0)
    if strength <= 0:
        return rgb
    h = max(1.0, strength * 30.0)
    bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
    cleaned = cv2.fastNlMeansDenoisingColored(bgr, None, h, h, 7, 21)
    return cv2.cvtColor(cleaned, cv2.COLOR_BGR2RGB)


def load_image(path, crop=None, denoise_strength=0.0):
    """Decode an image file into a PixelTensor.

    The crop (if any) is applied before colour conversion; ICC profile and
    EXIF bytes are kept in the tensor metadata so they can be written back.
    """
    with Image.open(path) as img:
        img.load()
        metadata = {}
        for key in ("icc_profile", "exif"):
            if img.info.get(key):
                metadata[key] = img.info[key]

        if crop is not None:
            bounded = crop.clamp(img.width, img.height)
            if bounded is not None:
                img = img.crop((bounded.x, bounded.y, bounded.x + bounded.width, bounded.y + bounded.height))

        rgb = np.array(img.convert("RGB"))

    rgb = denoise(rgb, denoise_strength)
    return PixelTensor.from_hwc(rgb, metadata)


def save_image(image, output_path, fmt=None, quality=92):
    """Write a PixelTensor to disk, creating the parent folder.

    Args:
        image: PixelTensor to save
        output_path: Destination file
        fmt: Output extension (png/jpg/bmp/tiff); defaults to the path's suffix
        quality: JPEG quality, clamped to 1..100
    """
    output_path = Path(output_path)
    ext = (fmt or output_path.suffix.lstrip(".") or DEFAULT_OUTPUT_EXTENSION).lower()
    pil_format = _PIL_FORMATS.get(ext, "PNG")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.fromarray(image.to_hwc_uint8())

    kwargs = {}
    if pil_format in ("JPEG", "PNG", "TIFF"):
        for key in ("icc_profile", "exif"):
            if image.metadata.get(key):
                kwargs[key] = image.metadata[key]
    if pil_format == "JPEG":
        kwargs["quality"] = min(max(int(quality), 1), 100)

    img.save(output_path, format=pil_format, **kwargs)


def normalize_extension(fmt):
    fmt = fmt.lower().lstrip(".")
    if fmt in ("jpeg", "jpg"):
        return "jpg"
    if fmt in ("png", "bmp", "tiff"):
        return fmt
    return DEFAULT_OUTPUT_EXTENSION


def resolve_extension(input_path, fmt):
    """Extension for an output file; "original" keeps a supported input extension."""
    if fmt and fmt.lower() != "original":
        return normalize_extension(fmt)

    original = Path(input_path).suffix.lstrip(".").lower()
    if original in SUPPORTED_OUTPUT_EXTENSIONS:
        return original

    logger.warning(f"Output format '{original}' unsupported. Falling back to {DEFAULT_OUTPUT_EXTENSION}.")
    return DEFAULT_OUTPUT_EXTENSION


def build_output_path(input_path, output_folder, fmt="original"):
    name = Path(input_path).stem
    ext = resolve_extension(input_path, fmt)
    return os.path.join(str(output_folder), f"{name}_upscaled.{ext}")


def build_video_output_path(input_path, output_folder):
    return os.path.join(str(output_folder), f"{Path(input_path).stem}_upscaled.mp4")
