"""Tensor-inference backends: ONNX Runtime sessions and PyTorch modules.

Both are wrapped in a small handle exposing the declared input/output shapes
and a synchronous ``run`` so the tile engine and the face networks do not care
which runtime executes them.
"""

import gc
import logging
import re
import threading
from pathlib import Path

import numpy as np
import torch
import torch.nn.functional as F

from upscaler.core.errors import PreconditionError

logger = logging.getLogger(__name__)

GPU_PROVIDERS = ("CUDAExecutionProvider", "DmlExecutionProvider")


def _dimension(value):
    """Normalise an ONNX dimension: symbolic/unknown axes become None."""
    if isinstance(value, (int, np.integer)) and value > 0:
        return int(value)
    return None


def infer_scale_from_filename(path, default=4):
    """Parse ``x2``/``4x`` style scale hints from a weights file name."""
    match = re.search(r"(?:^|[^a-z0-9])x(\d+)|(\d+)x(?:[^a-z0-9]|$)", Path(path).stem.lower())
    if match:
        return int(match.group(1) or match.group(2))
    return default


class ModelHandle:
    """Common interface for loaded models."""

    input_names = ()
    output_names = ()
    input_shape = (1, 3, None, None)
    output_shape = (1, 3, None, None)
    using_cpu_fallback = False
    device = "cpu"

    def run(self, array):
        return self.run_all(array)[self.output_names[0]]

    def run_all(self, array):
        raise NotImplementedError

    def close(self):
        pass


class OnnxModel(ModelHandle):
    def __init__(self, model_path, device="auto"):
        import onnxruntime as ort

        self.path = str(model_path)
        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        available = list(ort.get_available_providers())
        gpu = [p for p in GPU_PROVIDERS if p in available]
        self.using_cpu_fallback = False

        if device == "cpu":
            self.session = ort.InferenceSession(self.path, sess_options=options, providers=["CPUExecutionProvider"])
        elif not gpu:
            logger.warning(f"No GPU execution provider available for {Path(self.path).name}, using CPU")
            self.using_cpu_fallback = True
            self.session = ort.InferenceSession(self.path, sess_options=options, providers=["CPUExecutionProvider"])
        else:
            try:
                self.session = ort.InferenceSession(
                    self.path, sess_options=options, providers=gpu + ["CPUExecutionProvider"]
                )
                if self.session.get_providers()[0] not in gpu:
                    self.using_cpu_fallback = True
            except Exception as e:
                logger.warning(f"GPU session failed for {Path(self.path).name}, falling back to CPU: {e}")
                self.using_cpu_fallback = True
                self.session = ort.InferenceSession(
                    self.path, sess_options=options, providers=["CPUExecutionProvider"]
                )

        self.device = "cpu" if self.using_cpu_fallback or device == "cpu" else "gpu"
        inputs = self.session.get_inputs()
        outputs = self.session.get_outputs()
        self.input_names = tuple(i.name for i in inputs)
        self.output_names = tuple(o.name for o in outputs)
        self.input_shape = tuple(_dimension(d) for d in inputs[0].shape)
        self.output_shape = tuple(_dimension(d) for d in outputs[0].shape)
        self._input_dtype = np.float16 if "float16" in str(inputs[0].type) else np.float32
        logger.info(f"Loaded ONNX model {Path(self.path).name} with providers {self.session.get_providers()}")

    def run_all(self, array):
        feed = {self.input_names[0]: np.ascontiguousarray(array, dtype=self._input_dtype)}
        results = self.session.run(None, feed)
        return {
            name: np.asarray(value, dtype=np.float32)
            for name, value in zip(self.output_names, results)
        }

    def close(self):
        self.session = None


class TorchModel(ModelHandle):
    """TorchScript archive or RRDBNet state dict."""

    input_names = ("input",)
    output_names = ("output",)

    def __init__(self, model_path, device="auto"):
        self.path = str(model_path)
        self.model = self._load(self.path)
        self.model.eval()

        self.using_cpu_fallback = False
        self.device = "cpu"
        if device != "cpu":
            if torch.cuda.is_available():
                try:
                    self.model = self.model.to("cuda")
                    self.device = "cuda"
                except Exception as e:
                    logger.warning(f"CUDA initialisation failed, falling back to CPU: {e}")
                    self.model = self.model.to("cpu")
                    self.using_cpu_fallback = True
            else:
                logger.warning("CUDA not available, using CPU")
                self.using_cpu_fallback = True
        logger.info(f"Loaded PyTorch model {Path(self.path).name} on {self.device}")

    @staticmethod
    def _load(path):
        try:
            return torch.jit.load(path, map_location="cpu")
        except RuntimeError:
            logger.info(f"{Path(path).name} is not TorchScript, loading as RRDBNet weights")

        from upscaler.core.enhancer import rrdbnet_from_state_dict

        state_dict = torch.load(path, map_location="cpu", weights_only=True)
        return rrdbnet_from_state_dict(state_dict, default_scale=infer_scale_from_filename(path))

    def run_all(self, array):
        tensor = torch.from_numpy(np.ascontiguousarray(array, dtype=np.float32)).to(self.device)
        height, width = tensor.shape[-2:]
        # pixel_unshuffle needs sides divisible by 4
        pad_h, pad_w = -height % 4, -width % 4
        if pad_h or pad_w:
            tensor = F.pad(tensor, (0, pad_w, 0, pad_h), mode="replicate")

        with torch.no_grad():
            output = self.model(tensor)

        if pad_h or pad_w:
            scale = output.shape[-1] // tensor.shape[-1]
            output = output[..., :height * scale, :width * scale]
        return {self.output_names[0]: output.float().cpu().numpy()}

    def close(self):
        self.model = None
        if self.device == "cuda":
            torch.cuda.empty_cache()
        gc.collect()


def open_model(model_path, device="auto"):
    """Load a model file, choosing the runtime from its extension.

    Raises:
        PreconditionError: If the file does not exist
    """
    path = Path(model_path)
    if not path.is_file():
        raise PreconditionError(f"Model not found at {path}")
    if path.suffix.lower() == ".onnx":
        return OnnxModel(path, device=device)
    return TorchModel(path, device=device)


class SessionCache:
    """Lock-guarded table of loaded models keyed by resolved file path.

    Handles are shared between jobs; ``release`` drops one entry (model change)
    and ``clear`` drops them all (shutdown).
    """

    def __init__(self, loader=open_model):
        self._loader = loader
        self._lock = threading.Lock()
        self._handles = {}

    @staticmethod
    def _key(model_path):
        return str(Path(model_path).resolve())

    def acquire(self, model_path, device="auto"):
        key = self._key(model_path)
        with self._lock:
            handle = self._handles.get(key)
            if handle is None:
                handle = self._loader(model_path, device=device)
                self._handles[key] = handle
            return handle

    def release(self, model_path):
        with self._lock:
            handle = self._handles.pop(self._key(model_path), None)
        if handle is not None:
            handle.close()

    def clear(self):
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.close()

    def __contains__(self, model_path):
        with self._lock:
            return self._key(model_path) in self._handles

    def __len__(self):
        with self._lock:
            return len(self._handles)


_shared_cache = SessionCache()


def shared_session_cache():
    """The process-wide cache used when callers do not supply their own."""
    return _shared_cache
