import datetime
import logging
import os
import time
import uuid

from flask import current_app

from roomtour.events import broadcaster
from roomtour.realdata import default_api_config
from roomtour.store import API_CONFIG, MINIMAP, ROOMS, SENSORS, RecordStore

logger = logging.getLogger(__name__)

SENSOR_COLOR_ENV = "#4CAF50"
SENSOR_COLOR_CAMERA = "#2196F3"
MEDIA_TYPES = {"image", "video", "pdf", "youtube", "facebook", "web", "note", "3d"}


def now_iso():
    return datetime.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def new_record_id(existing_ids=()):
    """Millisecond timestamp id, bumped past any id already taken."""
    rid = int(time.time() * 1000)
    taken = [i for i in existing_ids if isinstance(i, int)]
    if taken and rid <= max(taken):
        rid = max(taken) + 1
    return rid


def new_item_id():
    return uuid.uuid4().hex


def get_store():
    return RecordStore(current_app.config["DATA_DIR"])


def is_blank(value):
    return value is None or value == ""


def to_number(value):
    """float() that also accepts numeric strings; raises ValueError on anything else."""
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Not a number: {value!r}")


def as_int(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# ---- rooms -----------------------------------------------------------------

def ensure_item_ids(items):
    changed = False
    for item in items or []:
        if isinstance(item, dict) and not item.get("id"):
            item["id"] = new_item_id()
            changed = True
    return changed


def get_rooms():
    rooms = get_store().get(ROOMS, [])
    return rooms if isinstance(rooms, list) else []


def save_rooms(rooms, broadcast=True):
    for room in rooms:
        ensure_item_ids(room.get("hotspots"))
        ensure_item_ids(room.get("mediaHotspots"))
    get_store().put(ROOMS, rooms)
    if broadcast:
        broadcaster.publish("rooms", rooms)
    return rooms


def find_room(rooms, room_id):
    for room in rooms:
        if room.get("id") == room_id:
            return room
    return None


def resolve_item_id(items, index):
    """Translate a positional index into the item's stable id.

    The index is only meaningful against the list as it is at request time.
    """
    if not items or index is None or index < 0 or index >= len(items):
        return None
    item = items[index]
    if not item.get("id"):
        item["id"] = new_item_id()
    return item["id"]


def find_item(items, item_id):
    for i, item in enumerate(items or []):
        if item.get("id") == item_id:
            return i, item
    return None, None


# ---- sensors -----------------------------------------------------------------

def default_env_readings():
    return {
        "temperature": {"value": 0, "unit": "°C", "min": 0, "max": 50},
        "humidity": {"value": 0, "unit": "%", "min": 0, "max": 100},
        "smoke": {"value": 0, "unit": "ppm", "status": "normal"},
        "co2": {"value": 0, "unit": "ppm", "min": 0, "max": 2000},
        "pm25": {"value": 0, "unit": "µg/m³", "min": 0, "max": 500},
    }


def default_camera():
    return {"streamUrl": "", "snapshotUrl": "", "resolution": "1920x1080", "status": "online", "notes": ""}


def get_sensors():
    sensors = get_store().get(SENSORS, [])
    return sensors if isinstance(sensors, list) else []


def save_sensors(sensors, broadcast=True):
    get_store().put(SENSORS, sensors)
    if broadcast:
        broadcaster.publish("sensors", sensors)
    return sensors


# ---- minimap -----------------------------------------------------------------

def get_minimap():
    data = get_store().get(MINIMAP, None)
    if not isinstance(data, dict):
        return {"floors": []}
    if "floors" not in data:
        # Older single-floor document.
        return {"floors": [{"id": 1, "name": "Floor 1", "image": data.get("image") or "", "markers": data.get("markers") or []}]}
    return data


def save_minimap(data):
    return get_store().put(MINIMAP, data)


def find_floor(minimap, floor_id):
    for floor in minimap.get("floors") or []:
        if floor.get("id") == floor_id:
            return floor
    return None


# ---- provider configs ------------------------------------------------------------

def get_api_config():
    cfg = get_store().get(API_CONFIG, None)
    return cfg if isinstance(cfg, dict) else default_api_config()


def get_room_api_config(room_id):
    store = get_store()
    cfg = store.get(store.room_api_config_key(room_id), None)
    return cfg if isinstance(cfg, dict) else None


# ---- uploaded files --------------------------------------------------------------

def upload_path_for_url(url):
    """Map an /uploads/... URL to a path inside the upload folder, or None."""
    if not url or not isinstance(url, str):
        return None
    rel = url.lstrip("/")
    if not rel.startswith("uploads/"):
        return None
    base = os.path.realpath(current_app.config["UPLOAD_FOLDER"])
    path = os.path.realpath(os.path.join(base, rel[len("uploads/"):]))
    if not path.startswith(base + os.sep):
        return None
    return path


def remove_uploaded_file(url):
    path = upload_path_for_url(url)
    if not path:
        return False
    try:
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Deleted file: {path}")
            return True
    except OSError as e:
        logger.warning(f"Failed to delete {path}: {e}")
    return False


# ---- navigation hotspots -----------------------------------------------------------
# Each returns (room, err); err is (message, status) or None.

def _room_or_error(rooms, room_id):
    room = find_room(rooms, room_id)
    if room is None:
        return None, ("Room not found", 404)
    return room, None


def add_nav_hotspot(room_id, data):
    yaw, pitch, target = data.get("yaw"), data.get("pitch"), data.get("target")
    if any(is_blank(v) for v in (yaw, pitch, target)):
        return None, ("Missing yaw/pitch/target", 400)
    try:
        hotspot = {"id": new_item_id(), "yaw": to_number(yaw), "pitch": to_number(pitch), "target": int(to_number(target))}
        if data.get("rotation") is not None:
            hotspot["rotation"] = to_number(data["rotation"])
    except ValueError as e:
        return None, (str(e), 400)
    if data.get("color") is not None:
        hotspot["color"] = data["color"]

    rooms = get_rooms()
    room, err = _room_or_error(rooms, room_id)
    if err:
        return None, err
    room.setdefault("hotspots", []).append(hotspot)
    save_rooms(rooms)
    logger.info(f"Hotspot added to room {room_id} (index {len(room['hotspots']) - 1})")
    return room, None


def update_nav_hotspot(room_id, index, data):
    rooms = get_rooms()
    room, err = _room_or_error(rooms, room_id)
    if err:
        return None, err
    hid = resolve_item_id(room.get("hotspots"), index)
    if hid is None:
        return None, ("Invalid hotspot index", 400)
    _, hotspot = find_item(room["hotspots"], hid)
    try:
        for key in ("yaw", "pitch", "rotation"):
            if data.get(key) is not None:
                hotspot[key] = to_number(data[key])
        if data.get("target") is not None:
            hotspot["target"] = int(to_number(data["target"]))
    except ValueError as e:
        return None, (str(e), 400)
    if data.get("color") is not None:
        hotspot["color"] = data["color"]
    save_rooms(rooms)
    logger.info(f"Hotspot {index} updated in room {room_id}")
    return room, None


def delete_nav_hotspot(room_id, index):
    rooms = get_rooms()
    room, err = _room_or_error(rooms, room_id)
    if err:
        return None, err
    hid = resolve_item_id(room.get("hotspots"), index)
    if hid is None:
        return None, ("Invalid hotspot index", 400)
    i, _ = find_item(room["hotspots"], hid)
    room["hotspots"].pop(i)
    save_rooms(rooms)
    logger.info(f"Hotspot {index} deleted from room {room_id}")
    return room, None
