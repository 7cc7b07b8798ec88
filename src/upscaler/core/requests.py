"""Request, progress and result types for image and video jobs."""

from dataclasses import dataclass, field
from typing import List, Optional

from upscaler.core.tensor import Crop


@dataclass
class UpscaleRequest:
    input_files: List[str]
    output_folder: str
    model_path: Optional[str] = None
    scale: int = 2
    mode: str = "quality"
    tile_size: Optional[int] = None
    tile_overlap: int = 32
    output_format: str = "original"
    jpeg_quality: int = 92
    preview_crop: Optional[Crop] = None
    denoise_strength: float = 0.0
    enable_temporal_blend: bool = False
    temporal_blend_strength: float = 0.15
    enable_face_refinement: bool = False

    @classmethod
    def from_config(cls, config):
        """Build a request from an ``[upscale]`` config section."""
        return cls(
            input_files=list(config.get("input_files", [])),
            output_folder=config.get("output_folder", "output"),
            model_path=config.get("model_path"),
            scale=int(config.get("scale", 2)),
            mode=config.get("mode", "quality"),
            tile_size=config.get("tile_size"),
            tile_overlap=int(config.get("tile_overlap", 32)),
            output_format=config.get("output_format", "original"),
            jpeg_quality=int(config.get("jpeg_quality", 92)),
            denoise_strength=float(config.get("denoise_strength", 0.0)),
            enable_temporal_blend=bool(config.get("enable_temporal_blend", False)),
            temporal_blend_strength=float(config.get("temporal_blend_strength", 0.15)),
            enable_face_refinement=bool(config.get("enable_face_refinement", False)),
        )


@dataclass
class VideoUpscaleRequest:
    input_path: str
    output_folder: str
    model_path: Optional[str] = None
    scale: int = 2
    mode: str = "quality"
    tile_size: Optional[int] = None
    tile_overlap: int = 32
    jpeg_quality: int = 92
    denoise_strength: float = 0.0
    enable_temporal_blend: bool = False
    temporal_blend_strength: float = 0.15
    use_hardware_decode: bool = False
    video_encoder: str = "CPU (libx264)"

    @classmethod
    def from_config(cls, config):
        """Build a request from a ``[video]`` config section."""
        return cls(
            input_path=config.get("input_video", ""),
            output_folder=config.get("output_folder", "output"),
            model_path=config.get("model_path"),
            scale=int(config.get("scale", 2)),
            mode=config.get("mode", "quality"),
            tile_size=config.get("tile_size"),
            tile_overlap=int(config.get("tile_overlap", 32)),
            jpeg_quality=int(config.get("jpeg_quality", 92)),
            denoise_strength=float(config.get("denoise_strength", 0.0)),
            enable_temporal_blend=bool(config.get("enable_temporal_blend", False)),
            temporal_blend_strength=float(config.get("temporal_blend_strength", 0.15)),
            use_hardware_decode=bool(config.get("use_hardware_decode", False)),
            video_encoder=config.get("video_encoder", "CPU (libx264)"),
        )

    def frame_request(self, frame_files, output_folder):
        """Per-frame image request: PNG output, no face refinement."""
        return UpscaleRequest(
            input_files=list(frame_files),
            output_folder=str(output_folder),
            model_path=self.model_path,
            scale=self.scale,
            mode=self.mode,
            tile_size=self.tile_size if self.tile_size is not None else 0,
            tile_overlap=self.tile_overlap,
            output_format="png",
            jpeg_quality=self.jpeg_quality,
            denoise_strength=self.denoise_strength,
            enable_temporal_blend=self.enable_temporal_blend,
            temporal_blend_strength=self.temporal_blend_strength,
            enable_face_refinement=False,
        )


@dataclass(frozen=True)
class UpscaleProgress:
    overall_percent: float
    message: str = ""
    current_index: int = 0
    total: int = 0
    tile_index: int = 0
    tile_total: int = 0


@dataclass
class UpscaleResult:
    output_files: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    used_cpu_fallback: bool = False
