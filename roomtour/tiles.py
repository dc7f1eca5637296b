import json
import logging
import math
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

TILE_SIZE = 512
JPEG_QUALITY = 80
DEFAULT_RESOLUTIONS = (512, 1024, 2048, 4096)
# front, back, left, right, up, down
FACES = ("f", "b", "l", "r", "u", "d")
LEVELS_DIRNAME = "levels"
DESCRIPTOR_FILENAME = "config.json"


class TileGenerationError(Exception):
    pass


def validate_resolutions(resolutions):
    levels = list(resolutions or [])
    if not levels:
        raise ValueError("At least one resolution level is required")
    for r in levels:
        if isinstance(r, bool) or not isinstance(r, int) or r <= 0:
            raise ValueError(f"Resolution levels must be positive integers, got {r!r}")
    return levels


def tile_grid_size(resolution, tile_size=TILE_SIZE):
    return int(math.ceil(resolution / tile_size))


def tile_crop_box(row, col, n, width, height):
    """
    Source-pixel rectangle for grid cell (row, col) out of n x n, as (left, top, w, h).
    Row walks the vertical axis, col the horizontal one. Returns None when the cell
    degenerates or falls outside the raster.
    """
    left = math.floor((col / n) * width)
    top = math.floor((row / n) * height)
    right = math.ceil(((col + 1) / n) * width)
    bottom = math.ceil(((row + 1) / n) * height)

    w = max(1, right - left)
    h = max(1, bottom - top)
    # Never read past the raster from the crop origin.
    w = min(w, width - left)
    h = min(h, height - top)

    if left < 0 or top < 0 or left >= width or top >= height or w <= 0 or h <= 0:
        return None
    return left, top, w, h


def tile_path(output_dir, level, face, row, col):
    return os.path.join(output_dir, str(level), face, str(row), f"{col}.jpg")


def build_descriptor(resolutions, tile_size=TILE_SIZE):
    return {
        "type": "cube",
        "levels": [
            {"tileSize": tile_size, "size": int(res), "fallbackOnly": idx == 0}
            for idx, res in enumerate(resolutions)
        ],
    }


def iter_tile_jobs(output_dir, resolutions, width, height, tile_size=TILE_SIZE):
    """Yield (path, box) for every tile in level -> face -> row -> col order."""
    for level, resolution in enumerate(resolutions):
        n = tile_grid_size(resolution, tile_size)
        for face in FACES:
            for row in range(n):
                for col in range(n):
                    yield tile_path(output_dir, level, face, row, col), tile_crop_box(row, col, n, width, height)


def open_source(source_path):
    old_max = getattr(Image, "MAX_IMAGE_PIXELS", None)
    Image.MAX_IMAGE_PIXELS = None
    try:
        with Image.open(source_path) as im:
            im = ImageOps.exif_transpose(im)
            if im.mode != "RGB":
                im = im.convert("RGB")
            im.load()
            return im
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise TileGenerationError(f"Cannot read source image {source_path}: {e}") from e
    finally:
        Image.MAX_IMAGE_PIXELS = old_max


def write_tile(image, box, out_path, tile_size=TILE_SIZE, quality=JPEG_QUALITY):
    left, top, w, h = box
    crop = image.crop((left, top, left + w, top + h))
    # Cover semantics: fill the whole square, centre-cropping the overflow.
    tile = ImageOps.fit(crop, (tile_size, tile_size), method=Image.Resampling.LANCZOS)
    out_dir = os.path.dirname(out_path)
    fd, tmp = tempfile.mkstemp(dir=out_dir, prefix=".tile_", suffix=".jpg")
    try:
        with os.fdopen(fd, "wb") as f:
            tile.save(f, "JPEG", quality=int(quality))
        os.replace(tmp, out_path)
    except Exception:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


def write_json(path, data):
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".config_", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
    except Exception:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


def _make_dirs(output_dir, resolutions, tile_size):
    os.makedirs(os.path.join(output_dir, LEVELS_DIRNAME), exist_ok=True)
    for level, resolution in enumerate(resolutions):
        n = tile_grid_size(resolution, tile_size)
        for face in FACES:
            for row in range(n):
                os.makedirs(os.path.join(output_dir, str(level), face, str(row)), exist_ok=True)


def generate_cube_tiles(source_path, output_dir, resolutions=DEFAULT_RESOLUTIONS, workers=1, on_tile_written=None):
    """
    Slice a panorama into a cube-addressed tile pyramid and write config.json.

    Every face currently tiles the same full source image (placeholder cube mapping,
    kept for compatibility with the viewer's existing config). Tiles already on disk are
    skipped, so re-running after a failure only encodes what is missing.
    Any tile failure aborts the whole run with TileGenerationError; the output directory
    is then incomplete and the caller decides whether to clean up or retry.
    """
    levels = validate_resolutions(resolutions)
    image = open_source(source_path)
    width, height = image.size
    logger.info(f"Tile generation: {source_path} ({width}x{height}) -> {output_dir}, levels={levels}")

    _make_dirs(output_dir, levels, TILE_SIZE)

    def run(job):
        path, box = job
        if os.path.exists(path):
            return False
        if box is None:
            return False
        try:
            write_tile(image, box, path)
        except Exception as e:
            raise TileGenerationError(f"Failed to write tile {path}: {e}") from e
        if on_tile_written is not None:
            on_tile_written(path)
        return True

    written = 0
    jobs = iter_tile_jobs(output_dir, levels, width, height)
    if workers and int(workers) > 1:
        with ThreadPoolExecutor(max_workers=int(workers)) as pool:
            futures = [pool.submit(run, job) for job in jobs]
            try:
                for future in as_completed(futures):
                    written += int(future.result())
            except Exception:
                # Drop the queued tiles; only those already encoding run to the end.
                pool.shutdown(wait=True, cancel_futures=True)
                raise
    else:
        current_level = None
        for job in jobs:
            level = os.path.relpath(job[0], output_dir).split(os.sep)[0]
            if level != current_level:
                current_level = level
                logger.info(f"Generating level {level} ({levels[int(level)]}px)")
            written += int(run(job))

    descriptor = build_descriptor(levels)
    descriptor_path = os.path.join(output_dir, DESCRIPTOR_FILENAME)
    write_json(descriptor_path, descriptor)
    logger.info(f"Tile generation complete: {written} new tiles, config at {descriptor_path}")
    return descriptor
