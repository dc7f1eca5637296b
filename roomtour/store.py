import json
import os
import tempfile
import logging

logger = logging.getLogger(__name__)

ROOMS = "rooms"
SENSORS = "sensors"
MINIMAP = "minimap"
TOUR_SCENARIO = "tour-scenario"
API_CONFIG = "api-config"
ROOM_API_CONFIGS_DIR = "room-api-configs"


class RecordStore:
    """Flat JSON documents under one data directory.

    Every collection is read and written wholesale. There is no locking: two
    writers racing on the same collection lose one update (last write wins).
    """

    def __init__(self, data_dir):
        self.data_dir = data_dir
        os.makedirs(self.data_dir, exist_ok=True)

    def path(self, collection):
        return os.path.join(self.data_dir, f"{collection}.json")

    def exists(self, collection):
        return os.path.exists(self.path(collection))

    def get(self, collection, default=None):
        p = self.path(collection)
        try:
            with open(p, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return default
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable record file {p}: {e}")
            return default

    def put(self, collection, value):
        p = self.path(collection)
        os.makedirs(os.path.dirname(p), exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(p), prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2, ensure_ascii=False)
            os.replace(tmp, p)
        except Exception:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
        return value

    def delete(self, collection):
        p = self.path(collection)
        if os.path.exists(p):
            os.remove(p)
            return True
        return False

    def room_api_config_key(self, room_id):
        # Per-room provider configs live in their own sub-directory.
        return f"{ROOM_API_CONFIGS_DIR}/{room_id}"
