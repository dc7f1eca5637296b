import asyncio
import logging
import os
import time

import httpx
import numpy as np

from roomtour.telemetry import REAL_DATA_INTERVAL_SEC, SIMULATION_INTERVAL_SEC, TelemetryOverlay, parse_sse

# Headless telemetry client: mirrors what the viewer's overlay does against a running server.
#
# Keeps rooms/sensors in sync from /events, jitters CO2/smoke locally and
# overwrites environment readings of the current room from the real-data endpoint.

logger = logging.getLogger("roomtour.worker")

RECONNECT_DELAY_SEC = 1.0


async def follow_events(client, server, overlay):
    """Consume /events forever; reconnects after a dropped stream."""
    while True:
        try:
            async with client.stream("GET", f"{server}/events", timeout=None) as resp:
                resp.raise_for_status()
                logger.info(f"Connected to {server}/events")
                block = []
                async for line in resp.aiter_lines():
                    if line:
                        block.append(line)
                        continue
                    for event, data in parse_sse(block):
                        overlay.apply_event(event, data)
                    block = []
        except httpx.HTTPError as e:
            logger.warning(f"Event stream lost: {type(e).__name__}: {e}")
        await asyncio.sleep(RECONNECT_DELAY_SEC)


async def simulate(overlay, rng, interval=SIMULATION_INTERVAL_SEC):
    while True:
        await asyncio.sleep(interval)
        overlay.simulate_tick(rng)


async def poll_real_data(client, server, overlay, interval=REAL_DATA_INTERVAL_SEC):
    while True:
        if overlay.current_room_id is not None:
            try:
                res = await client.get(f"{server}/api/real-data/combined", params={"roomId": overlay.current_room_id})
                res.raise_for_status()
                body = res.json()
                if body.get("success"):
                    updated = overlay.apply_real_data(body.get("data"))
                    logger.debug(f"Real data applied to {updated} sensor(s) in room {overlay.current_room_id}")
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Real data poll failed: {e}")
        await asyncio.sleep(interval)


async def run(server, seed=None):
    overlay = TelemetryOverlay()
    overlay.on_change(lambda what: logger.debug(f"overlay changed: {what}"))
    rng = np.random.default_rng(seed)
    async with httpx.AsyncClient(timeout=10.0) as client:
        await asyncio.gather(
            follow_events(client, server, overlay),
            simulate(overlay, rng),
            poll_real_data(client, server, overlay),
        )


def main():
    logging.basicConfig(
        level=getattr(logging, (os.getenv("LOG_LEVEL") or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s: %(message)s",
    )
    server = (os.getenv("ROOMTOUR_SERVER") or "http://localhost:3000").rstrip("/")
    logger.info(f"[worker] starting (server={server})")
    while True:
        try:
            asyncio.run(run(server))
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logger.error(f"[worker] crashed: {type(e).__name__}: {e}")
            time.sleep(RECONNECT_DELAY_SEC)


if __name__ == "__main__":
    main()
