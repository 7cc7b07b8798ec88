"""Fakes shared by the test modules: a nearest-neighbour model and an ffmpeg stand-in."""

from pathlib import Path

import numpy as np
from PIL import Image

from upscaler.core.backend import ModelHandle, SessionCache
from upscaler.core.enhancer import InferenceEngine
from upscaler.core.errors import FfmpegError
from upscaler.core.tensor import PixelTensor


class NearestModel(ModelHandle):
    """Upscales NCHW input by pixel repetition."""

    input_names = ("input",)
    output_names = ("output",)

    def __init__(self, scale=2, input_shape=(1, 3, None, None), using_cpu_fallback=False):
        self.scale = scale
        self.input_shape = input_shape
        self.using_cpu_fallback = using_cpu_fallback
        self.calls = 0
        self.closed = False

    def run_all(self, array):
        self.calls += 1
        out = np.repeat(np.repeat(array, self.scale, axis=2), self.scale, axis=3)
        return {"output": out.astype(np.float32)}

    def close(self):
        self.closed = True


def nearest_engine(scale=2, **kwargs):
    model = NearestModel(scale, **kwargs)
    cache = SessionCache(loader=lambda path, device="auto": model)
    return InferenceEngine("fake_model.onnx", cache=cache), model


def gradient_image(width, height):
    y, x = np.mgrid[0:height, 0:width]
    rgb = np.stack([
        (x * 255 // max(1, width - 1)),
        (y * 255 // max(1, height - 1)),
        ((x + y) % 256),
    ], axis=-1).astype(np.uint8)
    return rgb


def write_image(path, width, height):
    Image.fromarray(gradient_image(width, height)).save(path)
    return str(path)


def tensor(width, height):
    return PixelTensor.from_hwc(gradient_image(width, height))


class FakeFfmpeg:
    """Records ffmpeg invocations and fakes decode/encode on the filesystem.

    ``encode_failures`` is a predicate (encoder, audio_mode) -> bool deciding
    which encode attempts exit with an error.
    """

    def __init__(self, frame_count=3, frame_size=(8, 6), encode_failures=None, fps=24.0, duration=1.0):
        self.frame_count = frame_count
        self.frame_size = frame_size
        self.encode_failures = encode_failures or (lambda encoder, audio: False)
        self.fps = fps
        self.duration = duration
        self.decode_calls = []
        self.encode_calls = []

    def probe_duration(self, input_path, cancel=None):
        return self.duration

    def probe_frame_rate(self, input_path, cancel=None):
        return self.fps

    def run_with_progress(self, args, duration_seconds, on_progress=None, cancel=None):
        if "-vsync" in args:
            self.decode_calls.append(list(args))
            pattern = args[-1]
            for index in range(1, self.frame_count + 1):
                write_image(pattern % index, *self.frame_size)
        else:
            encoder = args[args.index("-c:v") + 1]
            if "-an" in args:
                audio = "none"
            else:
                audio = args[args.index("-c:a") + 1]
            self.encode_calls.append((encoder, audio, list(args)))
            if self.encode_failures(encoder, audio):
                raise FfmpegError(f"{encoder} with audio {audio} failed", 1)
            Path(args[-1]).write_bytes(b"video")

        if on_progress is not None:
            on_progress(50.0)
            on_progress(100.0)
