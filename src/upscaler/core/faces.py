"""Face refinement: YuNet detection, template alignment and GFPGAN restoration.

Each detected face is planned once as either an ``AlignedFace`` (landmarks gave
a usable affine transform) or an ``UnalignedFace`` (axis-aligned crop), and the
plan is dispatched to the matching refinement routine. Detector and refiner
failures are logged and skip the face (or the whole stage); they never fail the
upscale.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from upscaler.core import imageops
from upscaler.core.backend import shared_session_cache
from upscaler.core.enhancer import ensure_nchw

logger = logging.getLogger(__name__)

SCORE_THRESHOLD = 0.6
NMS_THRESHOLD = 0.3
MAX_FACES = 8
MAX_CANDIDATES = 5000
STRIDES = (8, 16, 32)
FACE_EXPAND_SCALE = 1.4
MIN_FACE_SIZE = 32

DETECTOR_INPUT_SIZE = 640
REFINER_INPUT_SIZE = 512
MIN_DETERMINANT = 1e-6

# Five-point template for a 512 px canonical face, YuNet landmark order
# (right eye, left eye, nose tip, right mouth corner, left mouth corner).
FACE_TEMPLATE_512 = np.array([
    [318.90277, 240.1936],
    [192.98138, 239.94708],
    [256.63416, 314.01935],
    [313.08905, 371.15118],
    [201.26117, 371.41043],
], dtype=np.float64)


@dataclass
class DetectedFace:
    x: float
    y: float
    width: float
    height: float
    score: float
    landmarks: Optional[np.ndarray] = None  # (5, 2) image coordinates


@dataclass(frozen=True)
class FaceRegion:
    """Square image region a face is refined in."""

    x: int
    y: int
    width: int
    height: int

    @property
    def feather(self):
        return imageops.feather_width(self.width, self.height)

    @classmethod
    def from_face(cls, face, image_width, image_height, scale=FACE_EXPAND_SCALE, min_size=MIN_FACE_SIZE):
        """Expand a detection around its centre and shift it inside the image.

        Returns None when the image is empty.
        """
        size = max(int(round(max(face.width, face.height) * scale)), min_size)
        size = min(size, image_width, image_height)
        if size <= 0:
            return None

        cx = face.x + face.width / 2.0
        cy = face.y + face.height / 2.0
        x = int(round(cx - size / 2.0))
        y = int(round(cy - size / 2.0))
        x = min(max(x, 0), image_width - size)
        y = min(max(y, 0), image_height - size)
        return cls(x, y, size, size)


@dataclass(frozen=True)
class AffineTransform:
    """x' = a*u + b*v + c, y' = d*u + e*v + f"""

    a: float
    b: float
    c: float
    d: float
    e: float
    f: float

    @property
    def matrix(self):
        return np.array([[self.a, self.b, self.c], [self.d, self.e, self.f]], dtype=np.float64)

    def apply(self, u, v):
        u = np.asarray(u, dtype=np.float64)
        v = np.asarray(v, dtype=np.float64)
        return self.a * u + self.b * v + self.c, self.d * u + self.e * v + self.f

    @property
    def determinant(self):
        return self.a * self.e - self.b * self.d

    @property
    def invertible(self):
        return abs(self.determinant) >= MIN_DETERMINANT

    def invert(self):
        if not self.invertible:
            raise ValueError("Affine transform is not invertible")
        det = self.determinant
        ia = self.e / det
        ib = -self.b / det
        id_ = -self.d / det
        ie = self.a / det
        return AffineTransform(
            ia, ib, -(ia * self.c + ib * self.f),
            id_, ie, -(id_ * self.c + ie * self.f),
        )


def face_template(size):
    """Template landmarks scaled to a square canonical frame of ``size`` px."""
    return FACE_TEMPLATE_512 * (float(size) / 512.0)


def _solve_row(src, values):
    """Cramer's rule for [u v 1] . (p, q, r) = value over three points."""
    (u0, v0), (u1, v1), (u2, v2) = src
    det = u0 * (v1 - v2) - v0 * (u1 - u2) + (u1 * v2 - u2 * v1)
    if abs(det) < MIN_DETERMINANT:
        return None
    t0, t1, t2 = values
    p = (t0 * (v1 - v2) - v0 * (t1 - t2) + (t1 * v2 - t2 * v1)) / det
    q = (u0 * (t1 - t2) - t0 * (u1 - u2) + (u1 * t2 - u2 * t1)) / det
    r = (u0 * (v1 * t2 - v2 * t1) - v0 * (u1 * t2 - u2 * t1) + t0 * (u1 * v2 - u2 * v1)) / det
    return p, q, r


def estimate_alignment(landmarks, template):
    """Affine transform taking the first three template points onto the landmarks.

    Args:
        landmarks: (>=3, 2) detected points in image coordinates
        template: (>=3, 2) canonical points

    Returns:
        AffineTransform (canonical -> image) or None when the points are degenerate
    """
    src = [tuple(map(float, p)) for p in np.asarray(template)[:3]]
    dst = np.asarray(landmarks, dtype=np.float64)[:3]
    row_x = _solve_row(src, dst[:, 0])
    row_y = _solve_row(src, dst[:, 1])
    if row_x is None or row_y is None:
        return None
    return AffineTransform(*row_x, *row_y)


def iou(first, second):
    x0 = max(first.x, second.x)
    y0 = max(first.y, second.y)
    x1 = min(first.x + first.width, second.x + second.width)
    y1 = min(first.y + first.height, second.y + second.height)
    inter = max(0.0, x1 - x0) * max(0.0, y1 - y0)
    union = first.width * first.height + second.width * second.height - inter
    return inter / union if union > 0 else 0.0


def nms(faces, threshold=NMS_THRESHOLD, max_faces=MAX_FACES):
    """Greedy non-maximum suppression, highest score first."""
    kept = []
    for face in sorted(faces, key=lambda f: f.score, reverse=True):
        if all(iou(face, other) <= threshold for other in kept):
            kept.append(face)
            if len(kept) >= max_faces:
                break
    return kept


def _pad32(value):
    return ((max(int(value), 1) - 1) // 32 + 1) * 32


class YuNetDetector:
    """YuNet face detector (ONNX, BGR 0..255 input, per-stride output heads)."""

    def __init__(self, model_path, device="auto", cache=None):
        self.model_path = model_path
        self.cache = cache if cache is not None else shared_session_cache()
        self.model = self.cache.acquire(model_path, device=device)

        shape = self.model.input_shape
        self.input_height = (shape[2] if len(shape) > 2 else None) or DETECTOR_INPUT_SIZE
        self.input_width = (shape[3] if len(shape) > 3 else None) or DETECTOR_INPUT_SIZE
        self.pad_width = _pad32(self.input_width)
        self.pad_height = _pad32(self.input_height)

    def _prepare(self, image):
        rgb = image.to_hwc_uint8()
        resized = cv2.resize(rgb, (self.input_width, self.input_height), interpolation=cv2.INTER_LINEAR)
        bgr = cv2.cvtColor(resized, cv2.COLOR_RGB2BGR).astype(np.float32)
        return np.transpose(bgr, (2, 0, 1))[np.newaxis]

    def _head(self, outputs, prefix, group, stride_index):
        name = f"{prefix}_{STRIDES[stride_index]}"
        if name in outputs:
            return outputs[name]
        # unnamed exports keep cls, obj, bbox, kps groups in stride order
        ordered = list(outputs.values())
        return ordered[stride_index + group * len(STRIDES)]

    def detect(self, image):
        if image.width == 0 or image.height == 0:
            return []

        outputs = self.model.run_all(self._prepare(image))
        scale_x = image.width / self.input_width
        scale_y = image.height / self.input_height

        candidates = []
        for i, stride in enumerate(STRIDES):
            cols = self.pad_width // stride
            rows = self.pad_height // stride
            count = rows * cols

            cls_score = np.clip(self._head(outputs, "cls", 0, i).reshape(-1)[:count], 0.0, 1.0)
            obj_score = np.clip(self._head(outputs, "obj", 1, i).reshape(-1)[:count], 0.0, 1.0)
            bbox = self._head(outputs, "bbox", 2, i).reshape(-1, 4)[:count]
            kps = self._head(outputs, "kps", 3, i).reshape(-1, 10)[:count]

            scores = np.sqrt(cls_score * obj_score)
            for idx in np.nonzero(scores >= SCORE_THRESHOLD)[0]:
                row, col = divmod(int(idx), cols)
                cx = (col + bbox[idx, 0]) * stride
                cy = (row + bbox[idx, 1]) * stride
                w = math.exp(bbox[idx, 2]) * stride
                h = math.exp(bbox[idx, 3]) * stride

                x0 = min(max((cx - w / 2.0) * scale_x, 0.0), image.width)
                y0 = min(max((cy - h / 2.0) * scale_y, 0.0), image.height)
                x1 = min(max((cx + w / 2.0) * scale_x, 0.0), image.width)
                y1 = min(max((cy + h / 2.0) * scale_y, 0.0), image.height)
                if x1 - x0 <= 0 or y1 - y0 <= 0:
                    continue

                points = kps[idx].reshape(5, 2).astype(np.float64)
                landmarks = np.stack([
                    (points[:, 0] + col) * stride * scale_x,
                    (points[:, 1] + row) * stride * scale_y,
                ], axis=1)
                candidates.append(DetectedFace(x0, y0, x1 - x0, y1 - y0, float(scores[idx]), landmarks))

        candidates.sort(key=lambda f: f.score, reverse=True)
        return nms(candidates[:MAX_CANDIDATES])


class GfpganRefiner:
    """GFPGAN-style restorer: [-1, 1] RGB in, [-1, 1] RGB out, fixed square size."""

    def __init__(self, model_path, device="auto", cache=None):
        self.model_path = model_path
        self.cache = cache if cache is not None else shared_session_cache()
        self.model = self.cache.acquire(model_path, device=device)

        shape = self.model.input_shape
        self.input_size = (shape[-1] if len(shape) == 4 else None) or REFINER_INPUT_SIZE

    def refine(self, data):
        """Refine a planar [0, 1] patch; the result has the patch's size."""
        _, height, width = data.shape
        resized = imageops.resize_bilinear(data, self.input_size, self.input_size)
        output = ensure_nchw(self.model.run(imageops.to_signed(resized)[np.newaxis]))
        refined = imageops.from_signed(output[0])
        if refined.shape[1:] != (height, width):
            refined = imageops.resize_bilinear(refined, width, height)
        return refined


@dataclass(frozen=True)
class AlignedFace:
    face: DetectedFace
    region: FaceRegion
    transform: AffineTransform  # canonical -> image


@dataclass(frozen=True)
class UnalignedFace:
    face: DetectedFace
    region: FaceRegion


def plan_face(face, image_width, image_height, canonical_size):
    """Choose the refinement path for one detection, or None to skip it."""
    if face.width < MIN_FACE_SIZE or face.height < MIN_FACE_SIZE:
        return None
    region = FaceRegion.from_face(face, image_width, image_height)
    if region is None:
        return None

    if face.landmarks is not None and len(face.landmarks) >= 3:
        transform = estimate_alignment(face.landmarks, face_template(canonical_size))
        if transform is not None and transform.invertible:
            return AlignedFace(face, region, transform)
        logger.warning("Face alignment unavailable, refining unaligned crop")
    return UnalignedFace(face, region)


class FaceRefiner:
    """Detect faces in an upscaled image and blend refined versions back in."""

    def __init__(self, detector, refiner):
        self.detector = detector
        self.refiner = refiner
        self._handlers = {
            AlignedFace: self._refine_aligned,
            UnalignedFace: self._refine_unaligned,
        }

    @classmethod
    def from_paths(cls, detector_path, refiner_path, device="auto", cache=None):
        return cls(
            YuNetDetector(detector_path, device=device, cache=cache),
            GfpganRefiner(refiner_path, device=device, cache=cache),
        )

    def refine(self, image, cancel=None):
        if image.width == 0 or image.height == 0:
            return image

        try:
            faces = self.detector.detect(image)
        except Exception as e:
            logger.warning(f"Face detection failed: {e}")
            return image

        if not faces:
            return image
        logger.info(f"Refining {len(faces)} face(s)")

        source = image.data
        output = source.copy()
        for face in faces[:MAX_FACES]:
            if cancel is not None:
                cancel.raise_if_cancelled()

            plan = plan_face(face, image.width, image.height, self.refiner.input_size)
            if plan is None:
                continue
            try:
                self._handlers[type(plan)](source, output, plan)
            except Exception as e:
                logger.warning(f"Face refinement skipped: {e}")

        return image.with_data(output)

    def _refine_aligned(self, source, output, plan):
        canonical = imageops.warp_affine(source, plan.transform.matrix, self.refiner.input_size)
        refined = self.refiner.refine(canonical)

        region = plan.region
        patch, mask = imageops.project_to_region(
            refined, plan.transform.invert(), region.x, region.y, region.width, region.height
        )
        weights = imageops.edge_weights(region.width, region.height, region.feather) * mask
        imageops.blend_patch(output, patch, region.x, region.y, weights)

    def _refine_unaligned(self, source, output, plan):
        region = plan.region
        patch = imageops.crop(source, region.x, region.y, region.width, region.height)
        refined = self.refiner.refine(patch)
        weights = imageops.edge_weights(region.width, region.height, region.feather)
        imageops.blend_patch(output, refined, region.x, region.y, weights)
