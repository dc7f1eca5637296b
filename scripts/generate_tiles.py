#!/usr/bin/env python3
import argparse
import logging
import sys
from pathlib import Path

from roomtour.tiles import DEFAULT_RESOLUTIONS, TileGenerationError, generate_cube_tiles


def parse_args():
    parser = argparse.ArgumentParser(
        description="Slice an equirectangular panorama into cube tiles for the viewer"
    )
    parser.add_argument("source", help="Panorama image (JPG, PNG or WEBP)")
    parser.add_argument("output", help="Output directory (e.g. tiles/1700000000000)")
    parser.add_argument(
        "--resolutions",
        default=",".join(str(r) for r in DEFAULT_RESOLUTIONS),
        help="Comma-separated face sizes per level (default: 512,1024,2048,4096)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Encode tiles on this many threads (default: 1)",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only print errors",
    )
    return parser.parse_args()


def main():
    args = parse_args()
    logging.basicConfig(
        level=logging.ERROR if args.quiet else logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
    )
    source = Path(args.source).expanduser().resolve()
    if not source.exists():
        print(f"Source not found: {source}", file=sys.stderr)
        return 1
    try:
        resolutions = [int(x) for x in args.resolutions.split(",") if x.strip()]
    except ValueError:
        print(f"Invalid resolutions: {args.resolutions}", file=sys.stderr)
        return 2

    written = []
    try:
        descriptor = generate_cube_tiles(
            str(source), args.output, resolutions, workers=args.workers, on_tile_written=written.append
        )
    except (TileGenerationError, ValueError) as e:
        print(f"Tile generation failed: {e}", file=sys.stderr)
        return 1

    if not args.quiet:
        print(f"Levels: {', '.join(str(l['size']) for l in descriptor['levels'])}")
        print(f"New tiles written: {len(written)}")
        print(f"Output: {Path(args.output).resolve()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
