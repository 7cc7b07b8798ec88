"""Example script upscaling the video named in the [video] config section."""

import logging

from upscaler.core.pipeline import VideoPipeline
from upscaler.core.requests import VideoUpscaleRequest
from upscaler.examples.progress import progress_bar
from utils import get_device, load_config


def main():
    logging.basicConfig(level=logging.INFO)
    config = load_config()
    device = get_device(config)

    request = VideoUpscaleRequest.from_config(config["video"])
    pipeline = VideoPipeline.from_config(config, device)

    with progress_bar("Video") as progress:
        output = pipeline.upscale(request, progress=progress)

    print(f"Video saved to {output}")


if __name__ == "__main__":
    main()
