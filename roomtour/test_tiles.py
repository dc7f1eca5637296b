import json
import os
import shutil
import tempfile
import time
import unittest
from unittest import mock

from PIL import Image

from roomtour.tiles import (
    FACES,
    TileGenerationError,
    build_descriptor,
    generate_cube_tiles,
    tile_crop_box,
    tile_grid_size,
)


def list_tiles(root):
    found = []
    for dirpath, _dirs, files in os.walk(root):
        for fn in files:
            if fn.endswith(".jpg"):
                found.append(os.path.relpath(os.path.join(dirpath, fn), root))
    return sorted(found)


class CropBoxTests(unittest.TestCase):
    def test_grid_size(self):
        self.assertEqual(tile_grid_size(512), 1)
        self.assertEqual(tile_grid_size(1024), 2)
        self.assertEqual(tile_grid_size(4096), 8)
        self.assertEqual(tile_grid_size(600), 2)

    def test_even_split(self):
        self.assertEqual(tile_crop_box(0, 0, 2, 1000, 500), (0, 0, 500, 250))
        self.assertEqual(tile_crop_box(0, 1, 2, 1000, 500), (500, 0, 500, 250))
        self.assertEqual(tile_crop_box(1, 1, 2, 1000, 500), (500, 250, 500, 250))

    def test_row_is_vertical(self):
        left, top, _w, _h = tile_crop_box(1, 0, 2, 1000, 500)
        self.assertEqual((left, top), (0, 250))

    def test_boxes_cover_source_and_stay_in_bounds(self):
        for width, height, n in ((1001, 499, 2), (4000, 2000, 8), (37, 19, 4), (3, 2, 8)):
            covered_x, covered_y = set(), set()
            for row in range(n):
                for col in range(n):
                    box = tile_crop_box(row, col, n, width, height)
                    self.assertIsNotNone(box)
                    left, top, w, h = box
                    self.assertGreaterEqual(left, 0)
                    self.assertGreaterEqual(top, 0)
                    self.assertGreater(w, 0)
                    self.assertGreater(h, 0)
                    self.assertLessEqual(left + w, width)
                    self.assertLessEqual(top + h, height)
                    covered_x.update(range(left, left + w))
                    covered_y.update(range(top, top + h))
            self.assertEqual(covered_x, set(range(width)))
            self.assertEqual(covered_y, set(range(height)))

    def test_empty_raster_has_no_box(self):
        self.assertIsNone(tile_crop_box(0, 0, 1, 0, 0))


class GenerateCubeTilesTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp(prefix="roomtour_tiles_")
        self.source = os.path.join(self.tmp, "pano.jpg")
        Image.new("RGB", (1200, 600), (120, 40, 200)).save(self.source, "JPEG")
        self.out = os.path.join(self.tmp, "out")

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_writes_every_tile_and_descriptor(self):
        written = []
        descriptor = generate_cube_tiles(self.source, self.out, [512, 1024], on_tile_written=written.append)

        tiles = list_tiles(self.out)
        level0 = [t for t in tiles if t.startswith("0" + os.sep)]
        level1 = [t for t in tiles if t.startswith("1" + os.sep)]
        self.assertEqual(len(level0), 6)
        self.assertEqual(len(level1), 24)
        self.assertEqual(len(written), 30)
        for face in FACES:
            for row in range(2):
                for col in range(2):
                    self.assertTrue(os.path.exists(os.path.join(self.out, "1", face, str(row), f"{col}.jpg")))
        self.assertTrue(os.path.isdir(os.path.join(self.out, "levels")))

        with open(os.path.join(self.out, "config.json"), encoding="utf-8") as f:
            on_disk = json.load(f)
        self.assertEqual(on_disk, descriptor)
        self.assertEqual(
            on_disk,
            {
                "type": "cube",
                "levels": [
                    {"tileSize": 512, "size": 512, "fallbackOnly": True},
                    {"tileSize": 512, "size": 1024, "fallbackOnly": False},
                ],
            },
        )

    def test_tiles_are_512_square_jpegs(self):
        generate_cube_tiles(self.source, self.out, [1024])
        with Image.open(os.path.join(self.out, "0", "f", "1", "1.jpg")) as im:
            self.assertEqual(im.size, (512, 512))
            self.assertEqual(im.format, "JPEG")

    def test_second_run_writes_nothing(self):
        generate_cube_tiles(self.source, self.out, [512, 1024])
        sample_tile = os.path.join(self.out, "1", "u", "0", "1.jpg")
        before = os.path.getmtime(sample_tile)

        written = []
        generate_cube_tiles(self.source, self.out, [512, 1024], on_tile_written=written.append)
        self.assertEqual(written, [])
        self.assertEqual(os.path.getmtime(sample_tile), before)

    def test_resumes_only_missing_tiles(self):
        generate_cube_tiles(self.source, self.out, [1024])
        os.remove(os.path.join(self.out, "0", "d", "1", "0.jpg"))
        written = []
        generate_cube_tiles(self.source, self.out, [1024], on_tile_written=written.append)
        self.assertEqual(written, [os.path.join(self.out, "0", "d", "1", "0.jpg")])

    def test_thread_pool_gives_same_tiles(self):
        generate_cube_tiles(self.source, self.out, [512, 1024], workers=4)
        other = os.path.join(self.tmp, "serial")
        generate_cube_tiles(self.source, other, [512, 1024])
        self.assertEqual(list_tiles(self.out), list_tiles(other))

    def test_rejects_bad_resolutions_before_writing(self):
        for bad in ([], [0], [-512], [512.5], ["1024"]):
            with self.assertRaises(ValueError):
                generate_cube_tiles(self.source, self.out, bad)
        self.assertFalse(os.path.exists(self.out))

    def test_unreadable_source(self):
        broken = os.path.join(self.tmp, "broken.jpg")
        with open(broken, "w") as f:
            f.write("not an image")
        with self.assertRaises(TileGenerationError) as ctx:
            generate_cube_tiles(broken, self.out, [512])
        self.assertIn("broken.jpg", str(ctx.exception))

        with self.assertRaises(TileGenerationError):
            generate_cube_tiles(os.path.join(self.tmp, "missing.jpg"), self.out, [512])

    def test_tile_failure_aborts_run(self):
        with mock.patch("roomtour.tiles.write_tile", side_effect=OSError("disk full")):
            with self.assertRaises(TileGenerationError) as ctx:
                generate_cube_tiles(self.source, self.out, [512])
        self.assertIsInstance(ctx.exception.__cause__, OSError)
        self.assertFalse(os.path.exists(os.path.join(self.out, "config.json")))

    def test_pool_stops_queued_tiles_after_failure(self):
        attempts = []

        def failing_write(image, box, path):
            attempts.append(path)
            time.sleep(0.01)
            raise OSError("disk full")

        with mock.patch("roomtour.tiles.write_tile", side_effect=failing_write):
            with self.assertRaises(TileGenerationError):
                generate_cube_tiles(self.source, self.out, [512, 1024, 2048], workers=2)
        # 6 faces x (1 + 4 + 16) tiles would be attempted if the queue were drained.
        self.assertLess(len(attempts), 126)
        self.assertFalse(os.path.exists(os.path.join(self.out, "config.json")))

    def test_descriptor_write_leaves_no_partial_file(self):
        generate_cube_tiles(self.source, self.out, [512])
        self.assertEqual([f for f in os.listdir(self.out) if f.endswith(".json")], ["config.json"])

        os.remove(os.path.join(self.out, "config.json"))
        with mock.patch("roomtour.tiles.json.dump", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                generate_cube_tiles(self.source, self.out, [512])
        self.assertEqual([f for f in os.listdir(self.out) if f.endswith(".json")], [])

    def test_descriptor_marks_only_first_level_fallback(self):
        levels = build_descriptor([512, 1024, 2048, 4096])["levels"]
        self.assertEqual([l["fallbackOnly"] for l in levels], [True, False, False, False])
        self.assertEqual([l["size"] for l in levels], [512, 1024, 2048, 4096])


if __name__ == "__main__":
    unittest.main()
