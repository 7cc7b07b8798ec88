"""Main controller script for upscaler - handles both image and video upscaling."""

import logging
import sys

from upscaler.core.errors import OperationCancelled, UpscaleError
from upscaler.core.image_pipeline import ImagePipeline
from upscaler.core.jobs import JobRunner
from upscaler.core.pipeline import VideoPipeline
from upscaler.core.requests import UpscaleRequest, VideoUpscaleRequest
from upscaler.examples.progress import progress_bar
from utils import get_device, load_config


def run_video(config, device, runner):
    request = VideoUpscaleRequest.from_config(config["video"])
    pipeline = VideoPipeline.from_config(config, device)
    with progress_bar("Video") as progress:
        output = runner.run(pipeline.upscale, request, progress=progress)
    print(f"Video saved to {output}")


def run_images(config, device, runner):
    upscale_config = config["upscale"]
    request = UpscaleRequest.from_config(upscale_config)
    pipeline = ImagePipeline.from_config(config, device)

    if upscale_config.get("preview"):
        with progress_bar("Preview") as progress:
            output = runner.run(pipeline.preview, request.input_files[0], request, progress=progress)
        print(f"Preview saved to {output}")
        return

    with progress_bar("Images") as progress:
        result = runner.run(pipeline.upscale, request, progress=progress)

    for warning in result.warnings:
        print(f"Warning: {warning}")
    if result.used_cpu_fallback:
        print("Warning: GPU unavailable, inference ran on CPU")
    print(f"Saved {len(result.output_files)} image(s) to {request.output_folder}")


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = load_config(sys.argv[1] if len(sys.argv) > 1 else None)
    device = get_device(config)
    runner = JobRunner()

    try:
        # Video processing mode
        if config.get("video", {}).get("input_video"):
            run_video(config, device, runner)
            return 0

        # Image upscaling mode
        if config.get("upscale", {}).get("input_files"):
            run_images(config, device, runner)
            return 0

        print("Error: No valid configuration found in config.toml")
        return 1
    except OperationCancelled:
        print("Cancelled.")
        return 130
    except UpscaleError as e:
        print(f"Error: {e}")
        return 1
    finally:
        runner.shutdown()


if __name__ == "__main__":
    sys.exit(main())
