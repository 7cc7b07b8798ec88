"""Video pipeline: ffmpeg decode -> per-frame image upscale -> ffmpeg encode."""

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

from upscaler.core.cancellation import CancellationToken
from upscaler.core.enhancer import InferenceEngine
from upscaler.core.errors import EncodeError, FfmpegError, PreconditionError, UpscaleError
from upscaler.core.image_io import build_video_output_path
from upscaler.core.image_pipeline import ImagePipeline
from upscaler.core.requests import UpscaleProgress
from upscaler.core.video_utils import FfmpegRunner

logger = logging.getLogger(__name__)

DECODE_WEIGHT = 0.15
UPSCALE_WEIGHT = 0.70
ENCODE_WEIGHT = 0.15

FALLBACK_ENCODER = "mpeg4"
AUDIO_MODES = ("copy", "aac", "none")

_ENCODER_PREFIXES = (
    ("NVIDIA", "h264_nvenc"),
    ("AMD", "h264_amf"),
    ("Intel", "h264_qsv"),
    ("Apple", "h264_videotoolbox"),
)

_UPSCALED_FRAME = re.compile(r"^frame_(\d+)_upscaled\.png$", re.IGNORECASE)


def resolve_video_encoder(selection):
    """Map an encoder label such as "NVIDIA NVENC (h264)" to an ffmpeg encoder name."""
    selection = (selection or "").strip().lower()
    for prefix, encoder in _ENCODER_PREFIXES:
        if selection.startswith(prefix.lower()):
            return encoder
    return "libx264"


def frame_sequence_info(frames_folder):
    """(frame count, lowest frame index) of the upscaled frames in a folder.

    Raises:
        UpscaleError: If no upscaled frames are present
    """
    indices = []
    for name in os.listdir(frames_folder):
        match = _UPSCALED_FRAME.match(name)
        if match:
            indices.append(int(match.group(1)))
    if not indices:
        raise UpscaleError("No upscaled frames found for encoding.")
    return len(indices), min(indices)


def build_decode_args(input_path, frames_pattern, hardware_decode=False):
    args = ["-y", "-hide_banner", "-loglevel", "error", "-progress", "pipe:1", "-nostats"]
    if hardware_decode:
        args += ["-hwaccel", "auto"]
    args += ["-i", str(input_path), "-vsync", "0", str(frames_pattern)]
    return args


def build_encode_args(frames_pattern, input_path, output_path, fps, encoder, start_number, audio_mode):
    audio_args = {"aac": ["-c:a", "aac"], "none": ["-an"]}.get(audio_mode, ["-c:a", "copy"])
    return [
        "-y", "-hide_banner", "-loglevel", "error", "-progress", "pipe:1", "-nostats",
        "-framerate", f"{fps:.3f}".rstrip("0").rstrip("."),
        "-start_number", str(start_number),
        "-i", str(frames_pattern),
        "-i", str(input_path),
        "-map", "0:v", "-map", "1:a?",
        "-c:v", encoder,
        "-pix_fmt", "yuv420p",
        *audio_args,
        str(output_path),
    ]


class VideoPipeline:
    """Upscale a video by running every decoded frame through an ImagePipeline."""

    def __init__(self, image_pipeline, ffmpeg):
        self.image_pipeline = image_pipeline
        self.ffmpeg = ffmpeg

    @classmethod
    def from_config(cls, config, device="auto", cache=None):
        """
        Create a pipeline from the ``[video]`` config section.

        Args:
            config: Full configuration dict
            device: Device to use ('auto', 'cuda' or 'cpu')
            cache: Optional SessionCache (defaults to the shared one)

        Returns:
            Configured VideoPipeline instance
        """
        video_config = config.get("video", {})
        model_path = video_config.get("model_path")
        if not model_path:
            raise PreconditionError("No model selected.")

        engine = InferenceEngine(model_path, device=device, cache=cache)
        ffmpeg = FfmpegRunner(video_config.get("ffmpeg_path"), video_config.get("ffprobe_path"))
        return cls(ImagePipeline(engine), ffmpeg)

    def upscale(self, request, progress=None, cancel=None):
        """Decode, upscale and re-encode one video.

        Returns:
            Path of the encoded ``<stem>_upscaled.mp4``

        Raises:
            PreconditionError: If no input video is given
            FfmpegError: If decoding fails
            UpscaleError: If decoding produced no frames
            EncodeError: If every encoder/audio combination failed
            OperationCancelled: If cancelled at any stage
        """
        if not request.input_path or not str(request.input_path).strip():
            raise PreconditionError("No input video specified.")

        cancel = cancel or CancellationToken()

        def report(percent, message, **kwargs):
            if progress is not None:
                progress(UpscaleProgress(overall_percent=percent, message=message, **kwargs))

        temp_root = tempfile.mkdtemp(prefix="upscaler_video_")
        input_frames = os.path.join(temp_root, "input")
        output_frames = os.path.join(temp_root, "output")
        os.makedirs(input_frames)
        os.makedirs(output_frames)

        try:
            duration = self.ffmpeg.probe_duration(request.input_path, cancel=cancel)

            report(0.0, "Decoding frames...")
            logger.info(f"Decoding {request.input_path}")
            self.ffmpeg.run_with_progress(
                build_decode_args(
                    request.input_path,
                    os.path.join(input_frames, "frame_%06d.png"),
                    request.use_hardware_decode,
                ),
                duration,
                on_progress=lambda p: report(p * DECODE_WEIGHT, f"Decoding frames ({p:.0f}%)"),
                cancel=cancel,
            )

            frames = sorted(
                str(path) for path in Path(input_frames).glob("frame_*.png")
            )
            if not frames:
                raise UpscaleError("No frames extracted from the video.")
            logger.info(f"Decoded {len(frames)} frames")

            def on_frame(event):
                report(
                    DECODE_WEIGHT * 100.0 + event.overall_percent * UPSCALE_WEIGHT,
                    f"Upscaling frames ({event.overall_percent:.0f}%)",
                    current_index=event.current_index,
                    total=event.total,
                    tile_index=event.tile_index,
                    tile_total=event.tile_total,
                )

            frame_request = request.frame_request(frames, output_frames)
            self.image_pipeline.upscale(frame_request, progress=on_frame, cancel=cancel)
            cancel.raise_if_cancelled()

            report((DECODE_WEIGHT + UPSCALE_WEIGHT) * 100.0, "Encoding video...")
            fps = self.ffmpeg.probe_frame_rate(request.input_path, cancel=cancel)
            frame_count, start_number = frame_sequence_info(output_frames)
            logger.info(f"Encoding {frame_count} frames starting at {start_number} at {fps:g} fps")

            output_path = build_video_output_path(request.input_path, request.output_folder)
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            encoder = resolve_video_encoder(request.video_encoder)
            frames_pattern = os.path.join(output_frames, "frame_%06d_upscaled.png")

            def encode(codec):
                self._encode_with_audio_fallbacks(
                    frames_pattern, request.input_path, output_path,
                    fps, duration, codec, start_number, report, cancel,
                )

            try:
                encode(encoder)
            except EncodeError as e:
                if encoder == FALLBACK_ENCODER:
                    raise
                logger.warning(f"Video encoder '{encoder}' failed. Falling back to {FALLBACK_ENCODER}. Error: {e}")
                encode(FALLBACK_ENCODER)

            report(100.0, "Video complete.")
            logger.info(f"Video saved to {output_path}")
            return output_path
        finally:
            shutil.rmtree(temp_root, ignore_errors=True)

    def _encode_with_audio_fallbacks(self, frames_pattern, input_path, output_path, fps, duration,
                                     encoder, start_number, report, cancel):
        base = (DECODE_WEIGHT + UPSCALE_WEIGHT) * 100.0
        last_error = None
        for audio_mode in AUDIO_MODES:
            logger.info(f"Encoding video with {encoder}, audio={audio_mode}")
            try:
                self.ffmpeg.run_with_progress(
                    build_encode_args(frames_pattern, input_path, output_path, fps, encoder, start_number, audio_mode),
                    duration,
                    on_progress=lambda p: report(base + p * ENCODE_WEIGHT, f"Encoding video ({p:.0f}%)"),
                    cancel=cancel,
                )
                return
            except FfmpegError as e:
                logger.warning(f"Encoding failed with {encoder} audio={audio_mode}. Error: {e}")
                last_error = e

        raise EncodeError(f"Encoding with {encoder} failed: {last_error}") from last_error
