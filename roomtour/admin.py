import os
import shutil
import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.utils import secure_filename

from roomtour.records import (
    MEDIA_TYPES,
    add_nav_hotspot,
    as_int,
    delete_nav_hotspot,
    find_floor,
    find_item,
    find_room,
    get_minimap,
    get_rooms,
    get_store,
    is_blank,
    new_record_id,
    remove_uploaded_file,
    resolve_item_id,
    save_minimap,
    save_rooms,
    to_number,
    update_nav_hotspot,
)
from roomtour.store import TOUR_SCENARIO
from roomtour.tiles import TileGenerationError, generate_cube_tiles

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)

PANORAMA_MIMETYPES = {"image/jpeg", "image/png", "image/webp"}
MEDIA_MIMETYPES = {
    "image/jpeg", "image/png", "image/webp", "image/gif",
    "application/pdf",
    "video/mp4", "video/webm",
    "model/gltf-binary", "model/gltf+json",
}
MEDIA_MAX_BYTES = 50 * 1024 * 1024
MEDIA_SUBDIR = "media"


def fail(message, status=400, **extra):
    body = {"success": False, "error": message}
    body.update(extra)
    return jsonify(body), status


def is_panorama_upload(file):
    if file.mimetype in PANORAMA_MIMETYPES:
        return True
    return file.filename.rsplit(".", 1)[-1].lower() in ("jpg", "jpeg", "png", "webp")


def is_media_upload(file):
    return file.mimetype in MEDIA_MIMETYPES or file.filename.lower().endswith((".glb", ".gltf"))


def tiles_dir_for(tiles_path):
    """Map a room's tilesPath ("tiles/<ts>") onto the tiles folder, or None if it points elsewhere."""
    if not tiles_path or not isinstance(tiles_path, str):
        return None
    rel = tiles_path.strip("/")
    if rel.startswith("tiles/"):
        rel = rel[len("tiles/"):]
    base = os.path.realpath(current_app.config["TILES_FOLDER"])
    path = os.path.realpath(os.path.join(base, rel))
    if not path.startswith(base + os.sep):
        return None
    return path


# ===== PANORAMA UPLOAD =====

@admin_bp.route("/upload-panorama", methods=["POST"])
def upload_panorama():
    file = request.files.get("panorama")
    if file is None or not file.filename:
        return fail("No panorama file uploaded")
    if not is_panorama_upload(file):
        return fail("Only JPG, PNG and WEBP files are allowed")

    rid = new_record_id(r.get("id") for r in get_rooms())
    filename = f"{rid}_{secure_filename(file.filename)}"
    upload_dir = current_app.config["UPLOAD_FOLDER"]
    os.makedirs(upload_dir, exist_ok=True)
    raw_path = os.path.join(upload_dir, filename)
    file.save(raw_path)
    logger.info(f"Panorama uploaded: {raw_path}")

    output_dir = os.path.join(current_app.config["TILES_FOLDER"], str(rid))
    try:
        generate_cube_tiles(
            raw_path,
            output_dir,
            current_app.config["TILE_RESOLUTIONS"],
            workers=current_app.config.get("TILE_WORKERS", 1),
        )
    except (TileGenerationError, ValueError) as e:
        logger.error(f"Tile generation failed for {raw_path}: {e}")
        shutil.rmtree(output_dir, ignore_errors=True)
        if os.path.exists(raw_path):
            os.remove(raw_path)
        return fail("Failed to generate tiles", 500, details=str(e))

    room = {
        "id": rid,
        "name": (request.form.get("name") or "").strip() or f"Room {rid}",
        "image": f"/uploads/{filename}",
        "tilesPath": f"tiles/{rid}",
        "floor": as_int(request.form.get("floor"), 1),
        "hotspots": [],
    }
    # Tiling can take a while; re-read so edits saved meanwhile are kept.
    rooms = get_rooms()
    rooms.append(room)
    save_rooms(rooms)
    logger.info(f"Room {rid} saved with tiles at {output_dir}")
    return jsonify({"success": True, "room": room, "tilesPath": room["tilesPath"]})


# ===== NAVIGATION HOTSPOTS =====

@admin_bp.route("/rooms/<int:room_id>/hotspots", methods=["GET"])
def hotspots_list(room_id):
    room = find_room(get_rooms(), room_id)
    if room is None:
        return fail("Room not found", 404)
    return jsonify({"success": True, "hotspots": room.get("hotspots") or []})


@admin_bp.route("/rooms/<int:room_id>/hotspots", methods=["PUT"])
def hotspots_add(room_id):
    room, err = add_nav_hotspot(room_id, request.get_json(silent=True) or {})
    if err:
        return fail(*err)
    return jsonify({"success": True, "hotspots": room["hotspots"]})


@admin_bp.route("/rooms/<int:room_id>/hotspots/<int:index>", methods=["PATCH"])
def hotspots_update(room_id, index):
    room, err = update_nav_hotspot(room_id, index, request.get_json(silent=True) or {})
    if err:
        return fail(*err)
    return jsonify({"success": True, "hotspots": room["hotspots"]})


@admin_bp.route("/rooms/<int:room_id>/hotspots/<int:index>", methods=["DELETE"])
def hotspots_delete(room_id, index):
    room, err = delete_nav_hotspot(room_id, index)
    if err:
        return fail(*err)
    return jsonify({"success": True, "hotspots": room["hotspots"]})


# ===== ROOMS =====

@admin_bp.route("/rooms/<int:room_id>", methods=["DELETE"])
def room_delete(room_id):
    rooms = get_rooms()
    room = find_room(rooms, room_id)
    if room is None:
        return fail("Room not found", 404)
    rooms.remove(room)
    save_rooms(rooms)

    minimap = get_minimap()
    for floor in minimap.get("floors") or []:
        floor["markers"] = [m for m in floor.get("markers") or [] if m.get("roomId") != room_id]
    try:
        save_minimap(minimap)
    except OSError as e:
        logger.warning(f"Failed to update minimap after deleting room {room_id}: {e}")

    tiles_dir = tiles_dir_for(room.get("tilesPath"))
    if tiles_dir and os.path.isdir(tiles_dir):
        try:
            shutil.rmtree(tiles_dir)
            logger.info(f"Deleted tiles: {tiles_dir}")
        except OSError as e:
            logger.warning(f"Failed to delete tiles {tiles_dir}: {e}")

    remove_uploaded_file(room.get("image"))
    for media in room.get("mediaHotspots") or []:
        remove_uploaded_file(media.get("mediaUrl"))

    logger.info(f"Room {room_id} deleted")
    return jsonify({"success": True, "message": "Room deleted successfully"})


# ===== MEDIA =====

@admin_bp.route("/media/upload", methods=["POST"])
def media_upload():
    if request.content_length and request.content_length > MEDIA_MAX_BYTES:
        return fail("File too large (max 50MB)", 413)
    file = request.files.get("media")
    if file is None or not file.filename:
        return fail("No media file uploaded")
    if not is_media_upload(file):
        return fail("File type not allowed. Allowed: images, PDF, videos, 3D models (GLB/GLTF)")

    media_dir = os.path.join(current_app.config["UPLOAD_FOLDER"], MEDIA_SUBDIR)
    os.makedirs(media_dir, exist_ok=True)
    filename = f"media_{new_record_id()}_{secure_filename(file.filename)}"
    path = os.path.join(media_dir, filename)
    file.save(path)
    media = {
        "filename": filename,
        "originalName": file.filename,
        "url": f"/uploads/{MEDIA_SUBDIR}/{filename}",
        "type": file.mimetype,
        "size": os.path.getsize(path),
    }
    logger.info(f"Media uploaded: {media['url']}")
    return jsonify({"success": True, "media": media})


@admin_bp.route("/rooms/<int:room_id>/media-hotspots", methods=["GET"])
def media_hotspots_list(room_id):
    room = find_room(get_rooms(), room_id)
    if room is None:
        return fail("Room not found", 404)
    return jsonify({"success": True, "mediaHotspots": room.get("mediaHotspots") or []})


@admin_bp.route("/rooms/<int:room_id>/media-hotspots", methods=["POST"])
def media_hotspots_add(room_id):
    data = request.get_json(silent=True) or {}
    if any(is_blank(data.get(k)) for k in ("yaw", "pitch", "title", "mediaType")):
        return fail("Missing required fields")
    media_type = data["mediaType"]
    if media_type not in MEDIA_TYPES:
        return fail(f"Unknown media type: {media_type}")
    # Notes carry their text in the description and need no file.
    if media_type != "note" and is_blank(data.get("mediaUrl")):
        return fail("mediaUrl is required for this media type")
    try:
        yaw, pitch = to_number(data["yaw"]), to_number(data["pitch"])
    except ValueError as e:
        return fail(str(e))

    rooms = get_rooms()
    room = find_room(rooms, room_id)
    if room is None:
        return fail("Room not found", 404)
    room.setdefault("mediaHotspots", []).append(
        {
            "yaw": yaw,
            "pitch": pitch,
            "title": data["title"],
            "description": data.get("description") or "",
            "mediaUrl": data.get("mediaUrl") or "",
            "mediaType": media_type,
        }
    )
    save_rooms(rooms)
    logger.info(f"Media hotspot added to room {room_id}")
    return jsonify({"success": True, "mediaHotspots": room["mediaHotspots"]})


@admin_bp.route("/rooms/<int:room_id>/media-hotspots/<int:index>", methods=["PATCH"])
def media_hotspots_update(room_id, index):
    data = request.get_json(silent=True) or {}
    rooms = get_rooms()
    room = find_room(rooms, room_id)
    if room is None:
        return fail("Room not found", 404)
    mid = resolve_item_id(room.get("mediaHotspots"), index)
    if mid is None:
        return fail("Invalid media hotspot index")
    _, media = find_item(room["mediaHotspots"], mid)

    if data.get("mediaType") is not None and data["mediaType"] not in MEDIA_TYPES:
        return fail(f"Unknown media type: {data['mediaType']}")
    try:
        for key in ("yaw", "pitch"):
            if data.get(key) is not None:
                media[key] = to_number(data[key])
    except ValueError as e:
        return fail(str(e))

    if "mediaUrl" in data and data["mediaUrl"] != media.get("mediaUrl"):
        remove_uploaded_file(media.get("mediaUrl"))
    for key in ("title", "description", "mediaUrl", "mediaType"):
        if key in data and data[key] is not None:
            media[key] = data[key]

    save_rooms(rooms)
    logger.info(f"Media hotspot {index} updated in room {room_id}")
    return jsonify({"success": True, "mediaHotspots": room["mediaHotspots"]})


@admin_bp.route("/rooms/<int:room_id>/media-hotspots/<int:index>", methods=["DELETE"])
def media_hotspots_delete(room_id, index):
    rooms = get_rooms()
    room = find_room(rooms, room_id)
    if room is None:
        return fail("Room not found", 404)
    mid = resolve_item_id(room.get("mediaHotspots"), index)
    if mid is None:
        return fail("Invalid media hotspot index")
    i, media = find_item(room["mediaHotspots"], mid)
    remove_uploaded_file(media.get("mediaUrl"))
    room["mediaHotspots"].pop(i)
    save_rooms(rooms)
    logger.info(f"Media hotspot {index} deleted from room {room_id}")
    return jsonify({"success": True, "mediaHotspots": room["mediaHotspots"]})


# ===== MINIMAP =====

def new_floor(floor_id, name=None):
    return {"id": floor_id, "name": name or f"Floor {floor_id}", "image": "", "markers": []}


@admin_bp.route("/minimap", methods=["GET"])
def minimap_get():
    minimap = get_minimap()
    floor_id = as_int(request.args.get("floor"))
    if floor_id:
        floor = find_floor(minimap, floor_id)
        if floor is None:
            return fail("Floor not found", 404)
        return jsonify({"success": True, "floor": floor})
    return jsonify({"success": True, "minimap": minimap})


@admin_bp.route("/minimap/upload-image", methods=["POST"])
def minimap_upload_image():
    file = request.files.get("minimap")
    if file is None or not file.filename:
        return fail("No minimap file uploaded")
    if not is_panorama_upload(file):
        return fail("Only JPG, PNG and WEBP files are allowed")

    upload_dir = current_app.config["UPLOAD_FOLDER"]
    os.makedirs(upload_dir, exist_ok=True)
    filename = f"minimap_{new_record_id()}_{secure_filename(file.filename)}"
    file.save(os.path.join(upload_dir, filename))

    floor_id = as_int(request.form.get("floorId"), 1)
    minimap = get_minimap()
    floor = find_floor(minimap, floor_id)
    if floor is None:
        floor = new_floor(floor_id, request.form.get("floorName"))
        minimap.setdefault("floors", []).append(floor)
    floor["image"] = f"/uploads/{filename}"
    save_minimap(minimap)
    return jsonify({"success": True, "floor": floor, "minimap": minimap})


def clamp_unit(value):
    return max(0.0, min(1.0, value))


@admin_bp.route("/minimap/floor/<int:floor_id>", methods=["PUT"])
def minimap_floor_save(floor_id):
    data = request.get_json(silent=True) or {}
    image, markers, floor_name = data.get("image"), data.get("markers"), data.get("floorName")
    if not image:
        return fail("Missing minimap image")
    if not isinstance(markers, list):
        return fail("Markers must be an array")

    normalized = []
    for idx, m in enumerate(markers):
        try:
            x, y = to_number((m or {}).get("x")), to_number((m or {}).get("y"))
        except (ValueError, AttributeError):
            return fail(f"Marker {idx} missing x/y")
        normalized.append({"x": clamp_unit(x), "y": clamp_unit(y), "roomId": as_int(m.get("roomId"))})

    minimap = get_minimap()
    floor = find_floor(minimap, floor_id)
    if floor is None:
        floor = new_floor(floor_id, floor_name)
        minimap.setdefault("floors", []).append(floor)
    floor["image"] = image
    floor["markers"] = normalized
    if floor_name:
        floor["name"] = floor_name
    save_minimap(minimap)
    return jsonify({"success": True, "floor": floor, "minimap": minimap})


@admin_bp.route("/minimap/floor/<int:floor_id>/name", methods=["PATCH"])
def minimap_floor_rename(floor_id):
    data = request.get_json(silent=True) or {}
    name = data.get("floorName").strip() if isinstance(data.get("floorName"), str) else ""
    if not name:
        return fail("Floor name is required")
    minimap = get_minimap()
    floor = find_floor(minimap, floor_id)
    if floor is None:
        return fail("Floor not found", 404)
    floor["name"] = name
    save_minimap(minimap)
    return jsonify({"success": True, "floor": floor, "minimap": minimap})


@admin_bp.route("/minimap/floor/<int:floor_id>", methods=["DELETE"])
def minimap_floor_delete(floor_id):
    minimap = get_minimap()
    floor = find_floor(minimap, floor_id)
    if floor is None:
        return fail("Floor not found", 404)
    minimap["floors"].remove(floor)
    save_minimap(minimap)
    return jsonify({"success": True, "minimap": minimap})


# ===== TOUR SCENARIO =====

@admin_bp.route("/tour-scenario", methods=["GET"])
def tour_scenario_get():
    scenario = get_store().get(TOUR_SCENARIO, None)
    if scenario:
        return jsonify({"success": True, "scenario": scenario})
    return jsonify({"success": False, "message": "No scenario found"})


@admin_bp.route("/tour-scenario", methods=["POST"])
def tour_scenario_save():
    scenario = request.get_json(silent=True)
    if not isinstance(scenario, dict) or not scenario.get("name"):
        return fail("Invalid scenario data")
    get_store().put(TOUR_SCENARIO, scenario)
    logger.info(f"Tour scenario saved: {scenario['name']} ({len(scenario.get('stops') or [])} stops)")
    return jsonify({"success": True, "scenario": scenario})


@admin_bp.route("/tour-scenario", methods=["DELETE"])
def tour_scenario_delete():
    try:
        get_store().delete(TOUR_SCENARIO)
    except OSError as e:
        return fail(str(e), 500)
    return jsonify({"success": True})
