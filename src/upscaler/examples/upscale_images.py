"""Example script upscaling the images listed in the [upscale] config section."""

import logging

from upscaler.core.image_pipeline import ImagePipeline
from upscaler.core.requests import UpscaleRequest
from upscaler.examples.progress import progress_bar
from utils import get_device, load_config


def main():
    logging.basicConfig(level=logging.INFO)
    config = load_config()
    device = get_device(config)

    request = UpscaleRequest.from_config(config["upscale"])
    pipeline = ImagePipeline.from_config(config, device)

    with progress_bar("Images") as progress:
        result = pipeline.upscale(request, progress=progress)

    for path in result.output_files:
        print(path)


if __name__ == "__main__":
    main()
