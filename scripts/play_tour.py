#!/usr/bin/env python3
import argparse
import asyncio
import logging
import math
import os
import sys

import httpx

from roomtour.tour import AutoTourEngine, EmptyRouteError, SimpleCamera, TourConfig, TourListener, TourState

logger = logging.getLogger("play_tour")


def parse_args():
    parser = argparse.ArgumentParser(
        description="Play the auto tour of a running server headlessly and log every step"
    )
    parser.add_argument(
        "--server",
        default=os.getenv("ROOMTOUR_SERVER") or "http://localhost:3000",
        help="Server base URL (default: $ROOMTOUR_SERVER or http://localhost:3000)",
    )
    parser.add_argument(
        "--speed",
        type=float,
        default=1.0,
        help="Playback speed multiplier (default: 1.0)",
    )
    parser.add_argument(
        "--ignore-scenario",
        action="store_true",
        help="Use the route derived from rooms even if a scenario is saved",
    )
    return parser.parse_args()


class LoggingListener(TourListener):
    def state_changed(self, engine):
        status = engine.status()
        logger.info(f"[{status['state']}] stop {status['current']}/{status['total']}")

    def show_info(self, title, description):
        logger.info(f"{title}: {description}")

    def highlight_hotspot(self, room_id, index):
        logger.info(f"highlight hotspot {index} in room {room_id}")

    def stop_skipped(self, index, stop, reason):
        logger.warning(f"skipped stop {index}: {reason}")


class LoggingCamera(SimpleCamera):
    def switch_to_room(self, room_id):
        logger.info(f"camera -> room {room_id}")
        super().switch_to_room(room_id)


def fetch_tour(server, ignore_scenario):
    with httpx.Client(base_url=server, timeout=10.0) as client:
        rooms = client.get("/api/rooms").raise_for_status().json()
        scenario = None
        if not ignore_scenario:
            body = client.get("/api/tour-scenario").raise_for_status().json()
            scenario = body.get("scenario") if body.get("success") else None
    return rooms, scenario


async def play(rooms, scenario, speed):
    base = TourConfig()
    config = TourConfig(
        pan_duration_ms=base.pan_duration_ms / speed,
        stop_duration_ms=base.stop_duration_ms / speed,
        min_pan_duration_ms=base.min_pan_duration_ms / speed,
        completion_delay_ms=base.completion_delay_ms / speed,
    )
    camera = LoggingCamera(rooms[0]["id"] if rooms else None)
    engine = AutoTourEngine(camera, {r["id"]: r for r in rooms}, config, LoggingListener())
    engine.load_scenario(scenario)
    engine.start()
    while engine.state != TourState.IDLE:
        await asyncio.sleep(0.1)
    logger.info(f"final orientation: yaw={math.degrees(camera.get_yaw()) % 360:.1f} pitch={math.degrees(camera.get_pitch()):.1f}")


def main():
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s: %(message)s")
    if args.speed <= 0:
        print("--speed must be positive", file=sys.stderr)
        return 2
    try:
        rooms, scenario = fetch_tour(args.server.rstrip("/"), args.ignore_scenario)
    except httpx.HTTPError as e:
        print(f"Could not load tour from {args.server}: {e}", file=sys.stderr)
        return 1
    try:
        asyncio.run(play(rooms, scenario, args.speed))
    except EmptyRouteError as e:
        print(str(e), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
