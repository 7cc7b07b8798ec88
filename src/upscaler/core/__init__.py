"""Core image and video upscaling classes."""

from upscaler.core.backend import SessionCache, open_model, shared_session_cache
from upscaler.core.cancellation import CancellationToken
from upscaler.core.enhancer import InferenceEngine, RRDBNet, clear_all_sessions
from upscaler.core.errors import (
    EncodeError,
    FfmpegError,
    JobInProgressError,
    OperationCancelled,
    PreconditionError,
    UpscaleError,
)
from upscaler.core.faces import FaceRefiner
from upscaler.core.image_pipeline import ImagePipeline
from upscaler.core.jobs import JobRunner
from upscaler.core.pipeline import VideoPipeline
from upscaler.core.requests import UpscaleProgress, UpscaleRequest, UpscaleResult, VideoUpscaleRequest
from upscaler.core.video_utils import FfmpegRunner

__all__ = [
    "CancellationToken",
    "EncodeError",
    "FaceRefiner",
    "FfmpegError",
    "FfmpegRunner",
    "ImagePipeline",
    "InferenceEngine",
    "JobInProgressError",
    "JobRunner",
    "OperationCancelled",
    "PreconditionError",
    "RRDBNet",
    "SessionCache",
    "UpscaleError",
    "UpscaleProgress",
    "UpscaleRequest",
    "UpscaleResult",
    "VideoPipeline",
    "VideoUpscaleRequest",
    "clear_all_sessions",
    "open_model",
    "shared_session_cache",
]
