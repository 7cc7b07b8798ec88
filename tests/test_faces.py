import math
import unittest

import numpy as np

from upscaler.core.backend import ModelHandle, SessionCache
from upscaler.core.faces import (
    AffineTransform,
    AlignedFace,
    DetectedFace,
    FaceRefiner,
    FaceRegion,
    GfpganRefiner,
    UnalignedFace,
    YuNetDetector,
    estimate_alignment,
    face_template,
    iou,
    nms,
    plan_face,
)
from upscaler.core.imageops import edge_weights, feather_width
from upscaler.core.tensor import PixelTensor


def box(x, y, size, score):
    return DetectedFace(x, y, size, size, score)


class TestNms(unittest.TestCase):
    def test_iou(self):
        self.assertAlmostEqual(iou(box(0, 0, 10, 1), box(0, 0, 10, 1)), 1.0)
        self.assertAlmostEqual(iou(box(0, 0, 10, 1), box(5, 0, 10, 1)), 50 / 150)
        self.assertEqual(iou(box(0, 0, 10, 1), box(20, 20, 10, 1)), 0.0)

    def test_overlapping_lower_score_removed(self):
        high, low = box(0, 0, 10, 0.9), box(1, 1, 10, 0.7)
        self.assertGreater(iou(high, low), 0.3)
        self.assertEqual(nms([low, high]), [high])

    def test_low_overlap_both_kept(self):
        first, second = box(0, 0, 10, 0.9), box(8, 0, 10, 0.8)
        self.assertLessEqual(iou(first, second), 0.3)
        self.assertEqual(nms([second, first]), [first, second])

    def test_kept_faces_capped(self):
        faces = [box(i * 20, 0, 10, 0.5 + i / 100) for i in range(12)]
        kept = nms(faces)
        self.assertEqual(len(kept), 8)
        self.assertEqual(kept[0].score, max(f.score for f in faces))


class TestAlignment(unittest.TestCase):
    def setUp(self):
        angle = math.radians(12)
        self.expected = AffineTransform(
            1.3 * math.cos(angle), -1.3 * math.sin(angle), 40.0,
            1.3 * math.sin(angle), 1.3 * math.cos(angle), 25.0,
        )
        self.template = face_template(512)
        xs, ys = self.expected.apply(self.template[:, 0], self.template[:, 1])
        self.landmarks = np.stack([xs, ys], axis=1)

    def test_template_points_map_onto_landmarks(self):
        transform = estimate_alignment(self.landmarks, self.template)
        xs, ys = transform.apply(self.template[:3, 0], self.template[:3, 1])
        np.testing.assert_allclose(np.stack([xs, ys], axis=1), self.landmarks[:3], atol=1e-6)
        np.testing.assert_allclose(transform.matrix, self.expected.matrix, atol=1e-6)

    def test_inverse_round_trips(self):
        inverse = self.expected.invert()
        us, vs = inverse.apply(self.landmarks[:, 0], self.landmarks[:, 1])
        np.testing.assert_allclose(np.stack([us, vs], axis=1), self.template, atol=1e-6)

    def test_degenerate_template_gives_no_alignment(self):
        collinear = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]])
        self.assertIsNone(estimate_alignment(self.landmarks, collinear))

    def test_singular_transform_cannot_invert(self):
        with self.assertRaises(ValueError):
            AffineTransform(1.0, 2.0, 0.0, 2.0, 4.0, 0.0).invert()

    def test_near_zero_determinant_is_not_invertible(self):
        squashed = AffineTransform(1.0, 0.0, 5.0, 0.0, 1e-7, 5.0)
        self.assertFalse(squashed.invertible)
        with self.assertRaises(ValueError):
            squashed.invert()

    def test_template_scales_with_canonical_size(self):
        np.testing.assert_allclose(face_template(256), face_template(512) / 2)


class TestFaceRegion(unittest.TestCase):
    def test_region_expanded_around_centre(self):
        region = FaceRegion.from_face(DetectedFace(100, 100, 50, 50, 0.9), 1000, 1000)
        self.assertEqual(region, FaceRegion(90, 90, 70, 70))

    def test_region_clamped_to_image_with_minimum_size(self):
        region = FaceRegion.from_face(DetectedFace(0, 0, 20, 20, 0.9), 100, 100)
        self.assertEqual(region, FaceRegion(0, 0, 32, 32))

        region = FaceRegion.from_face(DetectedFace(90, 90, 10, 10, 0.9), 100, 100)
        self.assertEqual(region, FaceRegion(68, 68, 32, 32))

    def test_feather_width_bounds(self):
        self.assertEqual(feather_width(10, 10), 2.0)
        self.assertEqual(feather_width(120, 200), 12.0)
        self.assertEqual(feather_width(1000, 1000), 32.0)

    def test_edge_weights_fall_to_zero_at_border(self):
        weights = edge_weights(20, 10, 4)
        self.assertEqual(weights[0, 10], 0.0)
        self.assertEqual(weights[5, 0], 0.0)
        self.assertEqual(weights[5, 10], 1.0)
        self.assertAlmostEqual(float(weights[5, 2]), 0.5)


class TestPlanFace(unittest.TestCase):
    def test_landmarks_give_aligned_plan(self):
        landmarks = face_template(64) + 50
        face = DetectedFace(40, 40, 60, 60, 0.9, landmarks)
        self.assertIsInstance(plan_face(face, 200, 200, 64), AlignedFace)

    def test_missing_or_degenerate_landmarks_fall_back(self):
        face = DetectedFace(40, 40, 60, 60, 0.9)
        self.assertIsInstance(plan_face(face, 200, 200, 64), UnalignedFace)

        face = DetectedFace(40, 40, 60, 60, 0.9, np.full((5, 2), 70.0))
        self.assertIsInstance(plan_face(face, 200, 200, 64), UnalignedFace)

    def test_nearly_collinear_landmarks_fall_back(self):
        landmarks = face_template(64) + 50
        landmarks[:, 1] = 70 + (landmarks[:, 1] - 70) * 1e-8
        face = DetectedFace(40, 40, 60, 60, 0.9, landmarks)
        self.assertIsInstance(plan_face(face, 200, 200, 64), UnalignedFace)

    def test_tiny_faces_skipped(self):
        self.assertIsNone(plan_face(DetectedFace(0, 0, 10, 10, 0.9), 200, 200, 64))


class FakeDetector:
    def __init__(self, faces=None, error=None):
        self.faces = faces or []
        self.error = error

    def detect(self, image):
        if self.error:
            raise self.error
        return self.faces


class OnesRefiner:
    input_size = 64

    def __init__(self, error=None):
        self.error = error
        self.inputs = []

    def refine(self, data):
        if self.error:
            raise self.error
        self.inputs.append(data.shape)
        return np.ones_like(data)


class TestFaceRefiner(unittest.TestCase):
    def setUp(self):
        self.image = PixelTensor.zeros(200, 200)

    def test_detector_failure_returns_image_unchanged(self):
        refiner = FaceRefiner(FakeDetector(error=RuntimeError("boom")), OnesRefiner())
        self.assertIs(refiner.refine(self.image), self.image)

    def test_no_faces_returns_image_unchanged(self):
        refiner = FaceRefiner(FakeDetector(), OnesRefiner())
        self.assertIs(refiner.refine(self.image), self.image)

    def test_refiner_failure_skips_face(self):
        face = DetectedFace(60, 60, 80, 80, 0.9)
        refiner = FaceRefiner(FakeDetector([face]), OnesRefiner(error=RuntimeError("bad model")))
        result = refiner.refine(self.image)
        np.testing.assert_array_equal(result.data, self.image.data)

    def test_unaligned_face_blended_into_region(self):
        face = DetectedFace(60, 60, 80, 80, 0.9)
        onnx = OnesRefiner()
        result = FaceRefiner(FakeDetector([face]), onnx).refine(self.image)

        # region is 112 px square at (44, 44)
        self.assertEqual(onnx.inputs, [(3, 112, 112)])
        self.assertEqual(float(result.data[0, 100, 100]), 1.0)
        self.assertEqual(float(result.data[0, 44, 100]), 0.0)
        self.assertEqual(float(result.data[0, 10, 10]), 0.0)

    def test_aligned_face_blends_only_covered_pixels(self):
        landmarks = face_template(64) * 1.5 + 50
        face = DetectedFace(60, 60, 80, 80, 0.9, landmarks)
        onnx = OnesRefiner()
        result = FaceRefiner(FakeDetector([face]), onnx).refine(self.image)

        self.assertEqual(onnx.inputs, [(3, 64, 64)])
        self.assertAlmostEqual(float(result.data[1, 100, 100]), 1.0, places=5)
        # inside the region but outside the warped canonical frame
        self.assertEqual(float(result.data[1, 46, 100]), 0.0)
        self.assertEqual(float(result.data[1, 10, 10]), 0.0)


class FixedModel(ModelHandle):
    def __init__(self, outputs, input_shape, output_names):
        self.outputs = outputs
        self.input_shape = input_shape
        self.output_names = output_names
        self.inputs = []

    def run_all(self, array):
        self.inputs.append(array)
        return dict(zip(self.output_names, self.outputs))


def yunet_outputs(named=True):
    counts = {8: 64, 16: 16, 32: 4}
    cls = {s: np.zeros((1, n, 1), dtype=np.float32) for s, n in counts.items()}
    obj = {s: np.zeros((1, n, 1), dtype=np.float32) for s, n in counts.items()}
    bbox = {s: np.zeros((1, n, 4), dtype=np.float32) for s, n in counts.items()}
    kps = {s: np.zeros((1, n, 10), dtype=np.float32) for s, n in counts.items()}

    # row 1, col 2 and an overlapping weaker neighbour at col 3 (stride 16)
    for idx, score in ((6, 0.9), (7, 0.8)):
        cls[16][0, idx, 0] = score
        obj[16][0, idx, 0] = score
        bbox[16][0, idx] = (0.5, 0.5, math.log(2.0), math.log(2.0))
    # below threshold
    cls[8][0, 0, 0] = 0.5
    obj[8][0, 0, 0] = 0.5

    names, arrays = [], []
    for prefix, group in (("cls", cls), ("obj", obj), ("bbox", bbox), ("kps", kps)):
        for stride in (8, 16, 32):
            names.append(f"{prefix}_{stride}" if named else f"output{len(names)}")
            arrays.append(group[stride])
    return arrays, tuple(names)


class TestYuNetDetector(unittest.TestCase):
    def detector(self, named):
        arrays, names = yunet_outputs(named)
        model = FixedModel(arrays, (1, 3, 64, 64), names)
        cache = SessionCache(loader=lambda path, device="auto": model)
        return YuNetDetector("yunet.onnx", cache=cache), model

    def test_decodes_and_suppresses_detections(self):
        for named in (True, False):
            detector, model = self.detector(named)
            faces = detector.detect(PixelTensor.zeros(128, 128))

            self.assertEqual(len(faces), 1)
            face = faces[0]
            self.assertAlmostEqual(face.score, 0.9, places=5)
            np.testing.assert_allclose((face.x, face.y, face.width, face.height), (48, 16, 64, 64), atol=1e-3)
            np.testing.assert_allclose(face.landmarks, np.tile([64.0, 32.0], (5, 1)))
            self.assertEqual(model.inputs[0].shape, (1, 3, 64, 64))

    def test_input_is_bgr_in_byte_range(self):
        detector, model = self.detector(True)
        image = PixelTensor(64, 64, np.zeros((3, 64, 64), dtype=np.float32))
        image.data[2] = 1.0
        detector.detect(image)
        self.assertEqual(float(model.inputs[0][0, 0].max()), 255.0)
        self.assertEqual(float(model.inputs[0][0, 2].max()), 0.0)


class TestGfpganRefiner(unittest.TestCase):
    def test_normalises_and_restores_patch_size(self):
        model = FixedModel(None, (1, 3, 32, 32), ("output",))
        model.run_all = lambda array: model.inputs.append(array) or {"output": array}
        cache = SessionCache(loader=lambda path, device="auto": model)
        refiner = GfpganRefiner("gfpgan.onnx", cache=cache)

        patch = np.full((3, 10, 10), 0.5, dtype=np.float32)
        refined = refiner.refine(patch)

        self.assertEqual(refiner.input_size, 32)
        self.assertEqual(model.inputs[0].shape, (1, 3, 32, 32))
        np.testing.assert_allclose(model.inputs[0], 0.0, atol=1e-6)
        self.assertEqual(refined.shape, (3, 10, 10))
        np.testing.assert_allclose(refined, 0.5, atol=1e-6)


if __name__ == "__main__":
    unittest.main()
