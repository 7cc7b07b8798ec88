"""Image pipeline: load -> split -> infer -> merge -> (faces) -> (temporal blend) -> save."""

import dataclasses
import logging
from pathlib import Path

import numpy as np
from PIL import Image

from upscaler.core.cancellation import CancellationToken
from upscaler.core.enhancer import InferenceEngine
from upscaler.core.errors import PreconditionError
from upscaler.core.faces import FaceRefiner
from upscaler.core.image_io import build_output_path, load_image, save_image
from upscaler.core.merger import merge_tiles, output_ratio
from upscaler.core.requests import UpscaleProgress, UpscaleResult
from upscaler.core.splitter import clamp_overlap, split_tiles
from upscaler.core.tensor import center_preview_crop

logger = logging.getLogger(__name__)


def auto_tile_size(mode, input_count, pixel_count=0):
    """Tile size used when the request leaves it unset."""
    if pixel_count >= 8000 * 8000:
        return 256
    if pixel_count >= 4000 * 4000:
        return 512
    if str(mode).lower() == "fast":
        return 256
    return 512 if input_count > 1 else 768


def blend_temporal(current, previous, alpha):
    """Blend a frame with the previous output: current*(1-alpha) + previous*alpha.

    Returns:
        (tensor, warning) where warning is None unless blending was skipped
        because the two frames differ in size
    """
    alpha = min(max(float(alpha), 0.0), 1.0)
    if previous is None or alpha <= 0:
        return current, None
    if (previous.width, previous.height) != (current.width, current.height):
        return current, "Temporal blend skipped due to mismatched frame sizes."
    if alpha >= 1:
        return current.with_data(previous.data.copy()), None

    blended = current.data * np.float32(1.0 - alpha) + previous.data * np.float32(alpha)
    return current.with_data(blended.astype(np.float32)), None


class ImagePipeline:
    """Upscale a batch of images in request order.

    A failure on one item propagates and ends the batch; files written for
    earlier items stay on disk.
    """

    def __init__(self, engine, face_refiner=None, loader=load_image, saver=save_image):
        self.engine = engine
        self.face_refiner = face_refiner
        self.loader = loader
        self.saver = saver

    @classmethod
    def from_config(cls, config, device="auto", cache=None):
        """
        Create a pipeline from the ``[upscale]`` and ``[face]`` config sections.

        Args:
            config: Full configuration dict
            device: Device to use ('auto', 'cuda' or 'cpu')
            cache: Optional SessionCache (defaults to the shared one)

        Returns:
            Configured ImagePipeline instance
        """
        upscale_config = config.get("upscale", {})
        model_path = upscale_config.get("model_path")
        if not model_path:
            raise PreconditionError("No model selected.")

        engine = InferenceEngine(model_path, device=device, cache=cache)
        face_refiner = None
        face_config = config.get("face", {})
        if upscale_config.get("enable_face_refinement"):
            if face_config.get("detector_model") and face_config.get("refiner_model"):
                face_refiner = FaceRefiner.from_paths(
                    face_config["detector_model"], face_config["refiner_model"], device=device, cache=cache
                )
            else:
                logger.warning("Face refinement enabled but [face] models are not configured")
        return cls(engine, face_refiner=face_refiner)

    def resolve_tile_size(self, request, image):
        preferred = self.engine.preferred_tile_size
        if preferred:
            return preferred
        if request.tile_size is None:
            return auto_tile_size(request.mode, len(request.input_files), image.width * image.height)
        return max(0, int(request.tile_size))

    def upscale(self, request, progress=None, cancel=None):
        """Run the whole batch.

        Args:
            request: UpscaleRequest
            progress: Optional callback receiving UpscaleProgress events in order
            cancel: Optional CancellationToken

        Returns:
            UpscaleResult with one output path per input, in input order

        Raises:
            PreconditionError: If the request has no inputs
            OperationCancelled: If cancelled between items or tiles
        """
        if not request.input_files:
            raise PreconditionError("No input files specified.")

        # loads the model, so a missing model fails before any output is written
        if self.engine.preferred_tile_size:
            logger.info(f"Model requires {self.engine.preferred_tile_size}px tiles")

        cancel = cancel or CancellationToken()
        total = len(request.input_files)
        result = UpscaleResult()
        previous = None

        def report(index, fraction, message, tile_index=0, tile_total=0):
            if progress is None:
                return
            progress(UpscaleProgress(
                overall_percent=(index - 1 + fraction) / total * 100.0,
                message=message,
                current_index=index,
                total=total,
                tile_index=tile_index,
                tile_total=tile_total,
            ))

        for index, input_path in enumerate(request.input_files, start=1):
            cancel.raise_if_cancelled()
            name = Path(input_path).name
            report(index, 0.0, f"Processing {name}")
            logger.info(f"Upscale started: {input_path}")

            image = self.loader(input_path, request.preview_crop, request.denoise_strength)
            report(index, 0.0, f"Loaded {name} ({image.width}x{image.height})")

            tile_size = self.resolve_tile_size(request, image)
            tiles = split_tiles(image, tile_size, request.tile_overlap)
            tile_total = max(1, len(tiles))
            report(index, 0.0, f"Split into {len(tiles)} tile(s)", 0, tile_total)

            def on_tile(done, count, index=index, tile_total=tile_total):
                report(index, done / tile_total, f"Tile {done}/{tile_total}", done, tile_total)

            output_tiles = self.engine.infer(tiles, on_tile=on_tile, cancel=cancel)

            scale_x, scale_y = output_ratio(tiles, output_tiles)
            if (scale_x, scale_y) != (request.scale, request.scale):
                logger.info(
                    f"Model output ratio {scale_x}x{scale_y} differs from requested scale {request.scale}; "
                    "using the model ratio"
                )
            merged = merge_tiles(
                output_tiles,
                image.width * scale_x,
                image.height * scale_y,
                clamp_overlap(tile_size, request.tile_overlap) * min(scale_x, scale_y),
            )
            merged.metadata = dict(image.metadata)
            report(index, 1.0, f"Merged {name} ({merged.width}x{merged.height})", tile_total, tile_total)

            if request.enable_face_refinement and self.face_refiner is not None:
                merged = self.face_refiner.refine(merged, cancel=cancel)
                report(index, 1.0, f"Refined faces in {name}", tile_total, tile_total)

            output_image = merged
            if request.enable_temporal_blend:
                output_image, warning = blend_temporal(merged, previous, request.temporal_blend_strength)
                if warning:
                    logger.warning(warning)
                    result.warnings.append(warning)

            output_path = build_output_path(input_path, request.output_folder, request.output_format)
            self.saver(output_image, output_path, Path(output_path).suffix.lstrip("."), request.jpeg_quality)
            result.output_files.append(output_path)
            previous = output_image
            report(index, 1.0, f"Saved {Path(output_path).name}", tile_total, tile_total)
            logger.info(f"Upscale finished: {output_path}")

        result.used_cpu_fallback = bool(getattr(self.engine, "using_cpu_fallback", False))
        return result

    def preview(self, input_path, request, progress=None, cancel=None):
        """Upscale a centred crop (at most 256 px square) of one image.

        Returns:
            Path of the written preview file
        """
        with Image.open(input_path) as img:
            crop = center_preview_crop(img.width, img.height)
        preview_request = dataclasses.replace(request, input_files=[str(input_path)], preview_crop=crop)
        return self.upscale(preview_request, progress=progress, cancel=cancel).output_files[0]
