import unittest

import numpy as np

from helpers import tensor
from upscaler.core.merger import edge_ramp, merge_tiles, output_ratio, tile_weights
from upscaler.core.splitter import clamp_overlap, split_tiles, tile_positions
from upscaler.core.tensor import PixelTensor, Tile


class TestSplitter(unittest.TestCase):
    def test_positions_pull_last_tile_back_to_edge(self):
        self.assertEqual(tile_positions(600, 256, 192), [0, 192, 344])
        self.assertEqual(tile_positions(512, 256, 256), [0, 256])
        self.assertEqual(tile_positions(100, 256, 192), [0])
        self.assertEqual(tile_positions(0, 256, 192), [])

    def test_tiles_are_row_major_and_cover_image(self):
        image = tensor(600, 400)
        tiles = split_tiles(image, 256, 32)

        self.assertEqual([(t.x, t.y) for t in tiles[:3]], [(0, 0), (192, 0), (344, 0)])
        self.assertEqual(len(tiles), 3 * 2)
        for tile in tiles:
            self.assertEqual(tile.data.shape, (3, 256, 256))
            np.testing.assert_array_equal(
                tile.data, image.data[:, tile.y:tile.y + 256, tile.x:tile.x + 256]
            )

    def test_small_image_tile_is_zero_filled(self):
        image = tensor(40, 30)
        tiles = split_tiles(image, 64, 8)

        self.assertEqual(len(tiles), 1)
        np.testing.assert_array_equal(tiles[0].data[:, :30, :40], image.data)
        self.assertEqual(float(tiles[0].data[:, 30:, :].sum()), 0.0)
        self.assertEqual(float(tiles[0].data[:, :, 40:].sum()), 0.0)

    def test_zero_tile_size_yields_whole_image(self):
        image = tensor(50, 20)
        tiles = split_tiles(image, 0, 32)
        self.assertEqual(len(tiles), 1)
        self.assertEqual((tiles[0].width, tiles[0].height), (50, 20))

    def test_empty_image_yields_no_tiles(self):
        image = PixelTensor(0, 0, np.zeros((3, 0, 0), dtype=np.float32))
        self.assertEqual(split_tiles(image, 256, 32), [])

    def test_overlap_clamped_to_quarter_tile(self):
        self.assertEqual(clamp_overlap(64, 100), 16)
        self.assertEqual(clamp_overlap(256, 32), 32)
        self.assertEqual(clamp_overlap(256, -5), 0)
        self.assertEqual(clamp_overlap(0, 32), 0)


class TestMerger(unittest.TestCase):
    def test_zero_overlap_reconstructs_exactly(self):
        for width, height, tile_size in ((600, 600, 256), (123, 77, 32), (64, 64, 64), (10, 7, 16)):
            image = tensor(width, height)
            tiles = split_tiles(image, tile_size, 0)
            merged = merge_tiles(tiles, width, height, 0)
            np.testing.assert_array_equal(merged.data, image.data)

    def test_overlap_blend_reconstructs_constant_content(self):
        image = tensor(300, 200)
        tiles = split_tiles(image, 128, 32)
        merged = merge_tiles(tiles, 300, 200, 32)
        np.testing.assert_allclose(merged.data, image.data, atol=1e-5)

    def test_single_cover_pixels_get_full_weight(self):
        tile = Tile(0, 0, 64, 64, np.ones((3, 64, 64), dtype=np.float32))
        weights = tile_weights(tile, 64, 64, 16)
        np.testing.assert_array_equal(weights, np.ones((64, 64), dtype=np.float32))

    def test_shared_band_weights_normalise_to_one(self):
        left = Tile(0, 0, 64, 32, np.full((3, 32, 64), 0.2, dtype=np.float32))
        right = Tile(32, 0, 64, 32, np.full((3, 32, 64), 0.8, dtype=np.float32))

        wl = tile_weights(left, 96, 32, 16)
        wr = tile_weights(right, 96, 32, 16)
        # first column of the right tile's ramp and last of the left one
        self.assertLess(wl[0, -1], 1.0)
        self.assertLess(wr[0, 0], 1.0)

        merged = merge_tiles([left, right], 96, 32, 16)
        self.assertAlmostEqual(float(merged.data[0, 0, 0]), 0.2, places=6)
        self.assertAlmostEqual(float(merged.data[0, 0, 95]), 0.8, places=6)
        band = merged.data[0, 0, 32:64]
        self.assertTrue(np.all(band >= 0.2 - 1e-6))
        self.assertTrue(np.all(band <= 0.8 + 1e-6))

    def test_edge_ramp_is_monotonic_on_ramped_edges(self):
        ramp = edge_ramp(20, 4)
        self.assertAlmostEqual(float(ramp[0]), 1 / 5)
        self.assertEqual(float(ramp[10]), 1.0)
        self.assertAlmostEqual(float(ramp[-1]), 1 / 5)
        self.assertTrue(np.all(edge_ramp(20, 4, ramp_start=False, ramp_end=False) == 1.0))

    def test_tiles_past_the_border_are_clipped(self):
        tile = Tile(0, 0, 16, 16, np.full((3, 16, 16), 0.5, dtype=np.float32))
        merged = merge_tiles([tile], 10, 12, 4)
        self.assertEqual(merged.data.shape, (3, 12, 10))
        np.testing.assert_allclose(merged.data, 0.5)

    def test_uncovered_pixels_stay_zero(self):
        tile = Tile(0, 0, 4, 4, np.ones((3, 4, 4), dtype=np.float32))
        merged = merge_tiles([tile], 8, 8, 0)
        self.assertEqual(float(merged.data[:, 4:, 4:].sum()), 0.0)

    def test_output_ratio_comes_from_tiles(self):
        source = [Tile(0, 0, 8, 8, np.zeros((3, 8, 8), dtype=np.float32))]
        result = [Tile(0, 0, 32, 32, np.zeros((3, 32, 32), dtype=np.float32))]
        self.assertEqual(output_ratio(source, result), (4, 4))
        self.assertEqual(output_ratio([], []), (1, 1))


if __name__ == "__main__":
    unittest.main()
