import datetime
import json
import logging

import numpy as np

logger = logging.getLogger(__name__)

SIMULATION_INTERVAL_SEC = 5.0
REAL_DATA_INTERVAL_SEC = 10.0

CO2_JITTER_PPM = 40
CO2_MIN, CO2_MAX = 300, 2500
SMOKE_JITTER_PPM = 2

EVENT_ROOMS = "rooms"
EVENT_SENSORS = "sensors"


def now_iso():
    return datetime.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def js_round(value, digits=0):
    # Half-up rounding, as the viewer displays it (Python's round() is banker's rounding).
    scale = 10 ** digits
    return float(np.floor(value * scale + 0.5) / scale) if digits else int(np.floor(value + 0.5))


def parse_sse(lines):
    """Yield (event, data) from an iterable of text/event-stream lines.

    Comment lines (keepalives) are ignored; multi-line data is joined with newlines.
    """
    event, data = None, []
    for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data:
                yield event or "message", "\n".join(data)
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield event or "message", "\n".join(data)


class TelemetryOverlay:
    """
    Client-side caches for rooms and sensors, kept current by full snapshots.

    Snapshots replace the cached collection outright (last write wins). Registered
    listeners are called with the name of what changed: "rooms", "sensors" or "room".
    """

    def __init__(self):
        self.rooms = {}
        self.sensors = []
        self.current_room_id = None
        self._listeners = []

    def on_change(self, callback):
        self._listeners.append(callback)
        return callback

    def _notify(self, what):
        for cb in list(self._listeners):
            cb(what)

    # -- snapshots -------------------------------------------------------------

    def load_initial(self, rooms, sensors):
        self.replace_rooms(rooms or [])
        self.replace_sensors(sensors or [])

    def replace_rooms(self, rooms):
        if not rooms:
            return False
        self.rooms = {r["id"]: r for r in rooms}
        self._notify(EVENT_ROOMS)
        if self.current_room_id not in self.rooms:
            self.switch_room(rooms[0]["id"])
        return True

    def replace_sensors(self, sensors):
        if not sensors:
            return False
        self.sensors = list(sensors)
        self._notify(EVENT_SENSORS)
        return True

    def apply_event(self, event, payload):
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload or "[]")
            except ValueError:
                logger.warning(f"Dropping malformed {event} event")
                return False
        if event == EVENT_ROOMS:
            return self.replace_rooms(payload)
        if event == EVENT_SENSORS:
            return self.replace_sensors(payload)
        return False

    def switch_room(self, room_id):
        self.current_room_id = room_id
        self._notify("room")

    # -- queries ---------------------------------------------------------------

    def room_sensors(self, room_id=None, include_cameras=True):
        rid = self.current_room_id if room_id is None else room_id
        return [
            s for s in self.sensors
            if s.get("roomId") == rid and (include_cameras or s.get("type") != "camera")
        ]

    def cameras(self, room_id=None):
        return [s for s in self.room_sensors(room_id) if s.get("type") == "camera"]

    # -- local updates ---------------------------------------------------------

    def simulate_tick(self, rng=None):
        """Jitter CO2 and smoke readings only; temperature, humidity and pm25 come from real data."""
        rng = rng if rng is not None else np.random.default_rng()
        for sensor in self.sensors:
            readings = sensor.get("sensors") or {}
            co2 = readings.get("co2")
            if co2 is not None:
                change = (rng.random() - 0.5) * CO2_JITTER_PPM
                co2["value"] = int(max(CO2_MIN, min(CO2_MAX, js_round(co2.get("value", 0) + change))))
            smoke = readings.get("smoke")
            if smoke is not None:
                change = (rng.random() - 0.5) * SMOKE_JITTER_PPM
                smoke["value"] = max(0, js_round(smoke.get("value", 0) + change))
        self._notify(EVENT_SENSORS)

    def apply_real_data(self, data):
        """Overwrite temperature/humidity/pm25 of environment sensors in the active room."""
        if not data or self.current_room_id is None:
            return 0
        updated = 0
        for index, sensor in enumerate(self.room_sensors(include_cameras=False)):
            readings = sensor.get("sensors")
            if not readings:
                continue
            variation = index * 0.5
            if "temperature" in readings:
                readings["temperature"]["value"] = js_round(data["temperature"] + variation, 1)
            if "humidity" in readings:
                readings["humidity"]["value"] = js_round(data["humidity"] + variation)
            if "pm25" in readings:
                readings["pm25"]["value"] = js_round(data["pm25"] + variation, 1)
            sensor["lastUpdate"] = now_iso()
            updated += 1
        if updated:
            self._notify(EVENT_SENSORS)
        return updated
