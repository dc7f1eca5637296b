from flask import Flask, request, jsonify, send_from_directory, Response, stream_with_context
import os
import logging
from werkzeug.utils import secure_filename
from flask_cors import CORS

from roomtour.events import broadcaster
from roomtour.realdata import default_api_config, fetch_combined_data, mock_combined_data
from roomtour.records import (
    SENSOR_COLOR_CAMERA,
    SENSOR_COLOR_ENV,
    add_nav_hotspot,
    as_int,
    default_camera,
    default_env_readings,
    delete_nav_hotspot,
    get_api_config,
    get_minimap,
    get_room_api_config,
    get_rooms,
    get_sensors,
    get_store,
    new_record_id,
    now_iso,
    save_rooms,
    save_sensors,
    update_nav_hotspot,
)
from roomtour.store import API_CONFIG, TOUR_SCENARIO
from roomtour.tiles import DEFAULT_RESOLUTIONS
from roomtour.tour import get_pan_duration, normalize_scenario, resolve_tour_route, TourConfig

app = Flask(__name__)
CORS(app)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.getenv("ROOMTOUR_DATA_DIR") or os.path.join(BASE_DIR, '..', 'data')
UPLOAD_FOLDER = os.getenv("ROOMTOUR_UPLOAD_DIR") or os.path.join(BASE_DIR, '..', 'uploads')
TILES_FOLDER = os.getenv("ROOMTOUR_TILES_DIR") or os.path.join(BASE_DIR, '..', 'tiles')


def parse_resolutions(raw):
    if not raw:
        return list(DEFAULT_RESOLUTIONS)
    return [int(x) for x in raw.split(",") if x.strip()]


app.config['DATA_DIR'] = DATA_DIR
app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
app.config['TILES_FOLDER'] = TILES_FOLDER
app.config['TILE_RESOLUTIONS'] = parse_resolutions(os.getenv("TILE_RESOLUTIONS"))
app.config['TILE_WORKERS'] = int(os.getenv("TILE_WORKERS") or "1")
app.config['MAX_CONTENT_LENGTH'] = 1024 * 1024 * 1024

# Setup Logging
log_file = os.getenv("ROOMTOUR_LOG_FILE") or os.path.join(BASE_DIR, 'roomtour.log')
log_level = getattr(logging, (os.getenv("LOG_LEVEL") or "DEBUG").upper(), logging.DEBUG)
handler = logging.FileHandler(log_file)
handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s: %(message)s'))
app.logger.addHandler(handler)
app.logger.setLevel(log_level)
# Module loggers (tiles, tour, records, ...) share the app's log file.
package_logger = logging.getLogger("roomtour")
package_logger.addHandler(handler)
package_logger.setLevel(log_level)

ALLOWED_IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'webp'}

os.makedirs(DATA_DIR, exist_ok=True)
os.makedirs(UPLOAD_FOLDER, exist_ok=True)
os.makedirs(TILES_FOLDER, exist_ok=True)


def allowed_image(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_IMAGE_EXTENSIONS


def fail(message, status=400, **extra):
    body = {"success": False, "error": message}
    body.update(extra)
    return jsonify(body), status


@app.errorhandler(413)
def request_entity_too_large(error):
    return fail("File too large", 413)


# ===== SSE =====

@app.route("/events")
def events():
    q = broadcaster.subscribe()
    initial = [("rooms", get_rooms()), ("sensors", get_sensors())]
    resp = Response(stream_with_context(broadcaster.stream(q, initial)), mimetype="text/event-stream")
    resp.headers["Cache-Control"] = "no-cache"
    resp.headers["X-Accel-Buffering"] = "no"
    return resp


# ===== ROOMS =====

@app.route("/test")
def server_test():
    return "SERVER OK"


@app.route("/api/rooms", methods=["GET"])
def rooms_list():
    return jsonify(get_rooms())


@app.route("/api/rooms", methods=["POST"])
def rooms_create():
    file = request.files.get("image")
    if file is None or not file.filename:
        return fail("No image uploaded")
    name = (request.form.get("name") or "").strip()
    if not name:
        return fail("Room name is required")
    if not allowed_image(file.filename):
        return fail("Only JPG, PNG and WEBP files are allowed")

    rooms = get_rooms()
    rid = new_record_id(r.get("id") for r in rooms)
    ext = os.path.splitext(secure_filename(file.filename))[1].lower()
    filename = f"{rid}{ext}"
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)
    file.save(os.path.join(app.config["UPLOAD_FOLDER"], filename))

    room = {"id": rid, "name": name, "image": f"/uploads/{filename}", "hotspots": []}
    rooms.append(room)
    save_rooms(rooms)
    return jsonify({"success": True, "room": room})


@app.route("/api/rooms/<int:room_id>/hotspots", methods=["PUT"])
def room_hotspot_add(room_id):
    data = request.get_json(silent=True) or {}
    app.logger.debug(f"PUT hotspot payload for room {room_id}: {data}")
    room, err = add_nav_hotspot(room_id, data)
    if err:
        return fail(*err)
    return jsonify({"success": True, "room": room})


@app.route("/api/rooms/<int:room_id>/hotspots/<int:index>", methods=["PATCH"])
def room_hotspot_update(room_id, index):
    room, err = update_nav_hotspot(room_id, index, request.get_json(silent=True) or {})
    if err:
        return fail(*err)
    return jsonify({"success": True, "room": room})


@app.route("/api/rooms/<int:room_id>/hotspots/<int:index>", methods=["DELETE"])
def room_hotspot_delete(room_id, index):
    room, err = delete_nav_hotspot(room_id, index)
    if err:
        return fail(*err)
    return jsonify({"success": True, "room": room})


# ===== MINIMAP / TOUR (public, read-only) =====

@app.route("/api/minimap", methods=["GET"])
def minimap_get():
    return jsonify({"success": True, "minimap": get_minimap()})


@app.route("/api/tour-scenario", methods=["GET"])
def tour_scenario_get():
    scenario = get_store().get(TOUR_SCENARIO, None)
    if scenario:
        return jsonify({"success": True, "scenario": scenario})
    return jsonify({"success": False, "message": "No scenario found"})


@app.route("/api/tour-route", methods=["GET"])
def tour_route_get():
    scenario = normalize_scenario(get_store().get(TOUR_SCENARIO, None))
    route = resolve_tour_route(get_rooms(), scenario)
    return jsonify(
        {
            "success": True,
            "source": "scenario" if scenario is not None else "derived",
            "cameraPanDuration": get_pan_duration(scenario, TourConfig.pan_duration_ms),
            "route": route,
        }
    )


# ===== SENSORS =====

def find_sensor(sensors, sensor_id):
    for s in sensors:
        if s.get("id") == sensor_id:
            return s
    return None


@app.route("/api/sensors", methods=["GET"])
def sensors_list():
    sensors = get_sensors()
    room_id = as_int(request.args.get("roomId"))
    if room_id:
        sensors = [s for s in sensors if s.get("roomId") == room_id]
    return jsonify({"success": True, "sensors": sensors})


@app.route("/api/sensors/<int:sensor_id>", methods=["GET"])
def sensors_get(sensor_id):
    sensor = find_sensor(get_sensors(), sensor_id)
    if sensor is None:
        return fail("Sensor not found", 404)
    return jsonify({"success": True, "sensor": sensor})


@app.route("/api/sensors", methods=["POST"])
def sensors_create():
    data = request.get_json(silent=True) or {}
    name, room_id = data.get("name"), as_int(data.get("roomId"))
    if not name or not room_id:
        return fail("Missing required fields")
    sensor_type = data.get("type") or "environment"
    sensors = get_sensors()
    sensor = {
        "id": new_record_id(s.get("id") for s in sensors),
        "name": name,
        "roomId": room_id,
        "type": sensor_type,
        "position": data.get("position") or {"yaw": 0, "pitch": 0},
        "lastUpdate": now_iso(),
        "color": SENSOR_COLOR_CAMERA if sensor_type == "camera" else SENSOR_COLOR_ENV,
    }
    if sensor_type == "camera":
        sensor["camera"] = data.get("camera") or default_camera()
    else:
        sensor["sensors"] = data.get("sensors") or default_env_readings()
    sensors.append(sensor)
    save_sensors(sensors)
    return jsonify({"success": True, "sensor": sensor})


@app.route("/api/sensors/<int:sensor_id>", methods=["PUT"])
def sensors_update(sensor_id):
    sensors = get_sensors()
    sensor = find_sensor(sensors, sensor_id)
    if sensor is None:
        return fail("Sensor not found", 404)
    data = request.get_json(silent=True) or {}
    next_type = data.get("type") or sensor.get("type") or "environment"

    if data.get("name"):
        sensor["name"] = data["name"]
    if data.get("position"):
        sensor["position"] = data["position"]
    if data.get("type"):
        sensor["type"] = data["type"]

    if next_type == "camera":
        camera = default_camera()
        camera.update(sensor.get("camera") or {})
        camera.update(data.get("camera") or {})
        sensor["camera"] = camera
        sensor["color"] = SENSOR_COLOR_CAMERA
    elif data.get("sensors"):
        sensor["sensors"] = data["sensors"]
        sensor["color"] = SENSOR_COLOR_ENV

    sensor["lastUpdate"] = now_iso()
    save_sensors(sensors)
    return jsonify({"success": True, "sensor": sensor})


@app.route("/api/sensors/<int:sensor_id>", methods=["DELETE"])
def sensors_delete(sensor_id):
    sensors = get_sensors()
    sensor = find_sensor(sensors, sensor_id)
    if sensor is None:
        return fail("Sensor not found", 404)
    sensors.remove(sensor)
    save_sensors(sensors)
    return jsonify({"success": True, "sensor": sensor})


# ===== PROVIDER CONFIG =====

@app.route("/api/config/api", methods=["GET"])
def api_config_get():
    return jsonify({"success": True, "config": get_api_config()})


@app.route("/api/config/api", methods=["POST"])
def api_config_save():
    config = request.get_json(silent=True)
    if not isinstance(config, dict):
        return fail("Config must be a JSON object")
    try:
        get_store().put(API_CONFIG, config)
    except OSError as e:
        return fail(str(e), 500)
    return jsonify({"success": True, "message": "Config saved successfully"})


@app.route("/api/rooms/<int:room_id>/api-config", methods=["GET"])
def room_api_config_get(room_id):
    config = get_room_api_config(room_id)
    if config is None:
        # Rooms never inherit the global config implicitly.
        return jsonify({"success": True, "config": default_api_config(), "isDefault": True})
    return jsonify({"success": True, "config": config})


@app.route("/api/rooms/<int:room_id>/api-config", methods=["POST"])
def room_api_config_save(room_id):
    config = request.get_json(silent=True)
    if not isinstance(config, dict):
        return fail("Config must be a JSON object")
    store = get_store()
    try:
        store.put(store.room_api_config_key(room_id), config)
    except OSError as e:
        return fail(str(e), 500)
    return jsonify({"success": True, "message": "Room API config saved successfully"})


# ===== REAL-TIME DATA =====

@app.route("/api/real-data/combined", methods=["GET"])
def real_data_combined():
    room_id = as_int(request.args.get("roomId"))
    if room_id:
        config = get_room_api_config(room_id) or default_api_config()
    else:
        config = get_api_config()
    try:
        data = fetch_combined_data(config)
    except Exception as e:
        app.logger.error(f"Error fetching combined data: {e}", exc_info=True)
        data = mock_combined_data()
    return jsonify({"success": True, "data": data})


@app.route("/api/real-data/combined/custom", methods=["POST"])
def real_data_combined_custom():
    config = request.get_json(silent=True) or {}
    try:
        data = fetch_combined_data(config)
    except Exception as e:
        app.logger.error(f"Error fetching combined data (custom): {e}", exc_info=True)
        data = mock_combined_data()
    return jsonify({"success": True, "data": data})


# ===== STATIC =====

@app.route("/uploads/<path:filename>")
def serve_upload(filename):
    return send_from_directory(app.config["UPLOAD_FOLDER"], filename)


@app.route("/tiles/<path:filename>")
def serve_tiles(filename):
    resp = send_from_directory(app.config["TILES_FOLDER"], filename)
    if filename.lower().endswith(".jpg"):
        # Tile paths never change content once written.
        resp.headers["Cache-Control"] = "public, max-age=31536000, immutable"
    return resp


from roomtour.admin import admin_bp  # noqa: E402

app.register_blueprint(admin_bp, url_prefix="/api/admin")

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=int(os.getenv("PORT") or "3000"), threaded=True)
