import asyncio
import enum
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

STOP_ROOM = "room"
STOP_HOTSPOT = "hotspot"

COMPLETION_TITLE = "Tour complete"
COMPLETION_MESSAGE = "You have visited every stop. Thanks for taking the tour!"


class EmptyRouteError(Exception):
    pass


@dataclass
class TourConfig:
    pan_duration_ms: int = 8000
    stop_duration_ms: int = 5000
    min_pan_duration_ms: int = 1000
    completion_delay_ms: int = 5000
    progress_interval_ms: int = 50
    frame_interval_s: float = 1.0 / 60.0


class TourState(str, enum.Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Route building
# ---------------------------------------------------------------------------

def build_tour_route(rooms) -> List[Dict[str, Any]]:
    """Derive a tour: every room by ascending id, each followed by its navigation hotspots.

    Hotspots whose target room is not in `rooms` are left out.
    """
    rooms = list(rooms or [])
    by_id = {r["id"]: r for r in rooms}
    route = []
    for room in sorted(rooms, key=lambda r: r["id"]):
        route.append({"type": STOP_ROOM, "roomId": room["id"], "roomName": room.get("name", "")})
        for index, hs in enumerate(room.get("hotspots") or []):
            target = by_id.get(hs.get("target"))
            if target is None:
                continue
            route.append(
                {
                    "type": STOP_HOTSPOT,
                    "roomId": room["id"],
                    "hotspotIndex": index,
                    "hotspotId": hs.get("id"),
                    "targetRoomName": target.get("name", ""),
                }
            )
    return route


def normalize_scenario(raw) -> Optional[Dict[str, Any]]:
    """Return a usable scenario, or None meaning "fall back to the derived route"."""
    if not isinstance(raw, dict):
        return None
    if not raw.get("name") or not isinstance(raw.get("stops"), list):
        return None
    return raw


def resolve_tour_route(rooms, scenario=None):
    scenario = normalize_scenario(scenario)
    if scenario is not None:
        # Authored stops are used verbatim, even an empty list; stale references are skipped at play time.
        return list(scenario["stops"])
    return build_tour_route(rooms)


def get_pan_duration(scenario, default_ms, floor_ms=1000):
    try:
        configured = float((scenario or {}).get("cameraPanDuration"))
    except (TypeError, ValueError):
        return default_ms
    if math.isfinite(configured) and configured >= floor_ms:
        return configured
    return default_ms


def ease_in_out(t):
    if t < 0.5:
        return 2 * t * t
    return 1 - ((-2 * t + 2) ** 2) / 2


def find_hotspot(room, stop):
    """Resolve a hotspot stop by its stable id, or by positional index for stops authored without one.

    A stop whose id is gone does not fall back to the index: whatever sits there now is a
    different hotspot.
    """
    hotspots = (room or {}).get("hotspots") or []
    hid = stop.get("hotspotId")
    if hid:
        for index, hs in enumerate(hotspots):
            if hs.get("id") == hid:
                return index, hs
        return None, None
    try:
        index = int(stop.get("hotspotIndex"))
    except (TypeError, ValueError):
        return None, None
    if 0 <= index < len(hotspots):
        return index, hotspots[index]
    return None, None


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class Camera:
    """The only channel through which the engine moves the viewport. Angles are radians."""

    def get_yaw(self):
        raise NotImplementedError

    def get_pitch(self):
        raise NotImplementedError

    def get_fov(self):
        raise NotImplementedError

    def set_yaw(self, value):
        raise NotImplementedError

    def set_pitch(self, value):
        raise NotImplementedError

    def get_room(self):
        raise NotImplementedError

    def switch_to_room(self, room_id):
        raise NotImplementedError


class SimpleCamera(Camera):
    def __init__(self, room_id=None, yaw=0.0, pitch=0.0, fov=math.radians(70)):
        self.room_id = room_id
        self.yaw = yaw
        self.pitch = pitch
        self.fov = fov

    def get_yaw(self):
        return self.yaw

    def get_pitch(self):
        return self.pitch

    def get_fov(self):
        return self.fov

    def set_yaw(self, value):
        self.yaw = value

    def set_pitch(self, value):
        self.pitch = value

    def get_room(self):
        return self.room_id

    def switch_to_room(self, room_id):
        self.room_id = room_id


class TourListener:
    """UI hooks. Every method is optional."""

    def state_changed(self, engine):
        pass

    def show_info(self, title, description):
        pass

    def clear_info(self):
        pass

    def highlight_hotspot(self, room_id, index):
        pass

    def clear_highlight(self, room_id, index):
        pass

    def clear_highlights(self):
        pass

    def set_progress(self, percent):
        pass

    def stop_skipped(self, index, stop, reason):
        pass


class LoopClock:
    def time(self):
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds):
        await asyncio.sleep(seconds)


class AnimationTask:
    """Holds at most one running asyncio task; starting a new one cancels the previous."""

    def __init__(self, name):
        self.name = name
        self._task = None

    @property
    def active(self):
        return self._task is not None and not self._task.done()

    def start(self, coro):
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(coro)
        return self._task

    def cancel(self):
        task, self._task = self._task, None
        if task is None or task.done():
            return
        # A task that cancels itself would just be marked cancelled; let it finish instead.
        if task is not asyncio.current_task():
            task.cancel()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AutoTourEngine:
    """
    Cooperative auto-tour state machine.

    The whole itinerary runs as one task: pan, dwell, advance. A second task drives the
    progress bar during a dwell. Every control method first cancels both, so timers from a
    previous stop can never act on a stale index. Control methods are plain calls meant
    to be invoked from inside the running event loop (UI callbacks).
    """

    def __init__(self, camera: Camera, rooms: Mapping[Any, Dict[str, Any]], config=None, listener=None, clock=None):
        self.camera = camera
        self.rooms = rooms
        self.config = config or TourConfig()
        self.listener = listener or TourListener()
        self.clock = clock or LoopClock()

        self.state = TourState.IDLE
        self.stops: List[Dict[str, Any]] = []
        self.current_index = 0
        self.scenario = None

        self._tour = AnimationTask("tour")
        self._progress = AnimationTask("progress")
        self._completion = AnimationTask("completion")
        self._highlight = None
        self._origin = None
        # Bumped on every cancel; a tour task only acts while its generation is current.
        self._generation = 0

    # -- flags ---------------------------------------------------------------

    @property
    def is_playing(self):
        return self.state in (TourState.PLAYING, TourState.PAUSED)

    @property
    def is_paused(self):
        return self.state == TourState.PAUSED

    def pending_tasks(self):
        return sum(1 for t in (self._tour, self._progress, self._completion) if t.active)

    def _set_state(self, state):
        if state != self.state:
            logger.debug(f"Auto tour: {self.state.value} -> {state.value} (stop {self.current_index})")
            self.state = state
        self.listener.state_changed(self)

    def status(self):
        return {
            "state": self.state.value,
            "current": min(self.current_index + 1, len(self.stops)) if self.stops else 0,
            "total": len(self.stops),
        }

    # -- scenario / route ----------------------------------------------------

    def load_scenario(self, raw):
        self.scenario = normalize_scenario(raw)
        return self.scenario

    def pan_duration_ms(self):
        return get_pan_duration(self.scenario, self.config.pan_duration_ms, self.config.min_pan_duration_ms)

    def build_route(self):
        return resolve_tour_route(list(self.rooms.values()), self.scenario)

    # -- commands ------------------------------------------------------------

    def start(self):
        route = self.build_route()
        if not route:
            raise EmptyRouteError("No tour stops: add rooms and hotspots first")
        self._cancel_all()
        self._clear_overlays()
        self.stops = route
        self.current_index = 0
        self._origin = None
        self._set_state(TourState.PLAYING)
        self._run()

    def pause(self):
        if self.state != TourState.PLAYING:
            return
        self._cancel_all()
        self._set_state(TourState.PAUSED)

    def resume(self):
        if self.state != TourState.PAUSED:
            return
        self._cancel_all()
        self._set_state(TourState.PLAYING)
        self._run()

    def toggle(self):
        if self.state == TourState.PAUSED:
            self.resume()
        else:
            self.pause()

    def next(self):
        if not self.is_playing:
            return
        self._cancel_all()
        self._clear_overlays()
        self.current_index += 1
        if self.current_index >= len(self.stops):
            self._complete()
            return
        self._set_state(TourState.PLAYING)
        self._run()

    def previous(self):
        if not self.is_playing:
            return
        self._cancel_all()
        self._clear_overlays()
        self.current_index = max(0, self.current_index - 1)
        self._set_state(TourState.PLAYING)
        self._run()

    def restart(self):
        if self.state == TourState.IDLE:
            return
        self._cancel_all()
        self._clear_overlays()
        self.current_index = 0
        self._origin = None
        self._set_state(TourState.PLAYING)
        self._run()

    def stop(self):
        if self.state == TourState.IDLE and not self.pending_tasks():
            return
        self._cancel_all()
        self._clear_overlays()
        self._origin = None
        self._set_state(TourState.IDLE)

    # -- internals -----------------------------------------------------------

    def _cancel_all(self):
        # A command issued from a listener callback runs inside the tour task, which
        # cannot cancel itself; the generation bump makes it bow out at its next check.
        self._generation += 1
        self._tour.cancel()
        self._progress.cancel()
        self._completion.cancel()

    def _live(self, generation):
        return generation == self._generation and self.state == TourState.PLAYING

    def _clear_overlays(self):
        self._highlight = None
        self.listener.clear_highlights()
        self.listener.clear_info()

    def _run(self):
        self._tour.start(self._run_tour(self._generation))

    def _complete(self):
        self._progress.cancel()
        self.current_index = len(self.stops)
        generation = self._generation
        self._set_state(TourState.COMPLETED)
        self.listener.show_info(COMPLETION_TITLE, COMPLETION_MESSAGE)
        if generation != self._generation:
            return
        self._completion.start(self._finish_after_delay())

    async def _finish_after_delay(self):
        await self.clock.sleep(self.config.completion_delay_ms / 1000.0)
        if self.state == TourState.COMPLETED:
            self._cancel_all()
            self._clear_overlays()
            self._set_state(TourState.IDLE)

    async def _run_tour(self, gen):
        while self._live(gen) and self.current_index < len(self.stops):
            stop = self.stops[self.current_index]
            kind = stop.get("type") if isinstance(stop, dict) else None
            if kind == STOP_ROOM:
                done = await self._execute_room_stop(gen, stop)
            elif kind == STOP_HOTSPOT:
                done = await self._execute_hotspot_stop(gen, stop)
            else:
                self._skip(stop, f"unknown stop type {kind!r}")
                done = True
            if not done or not self._live(gen):
                return
            self.current_index += 1
            self._origin = None
        if self._live(gen):
            self._complete()

    def _skip(self, stop, reason):
        logger.warning(f"Auto tour: skipping stop {self.current_index} ({reason})")
        self.listener.stop_skipped(self.current_index, stop, reason)

    def _enter_room(self, room_id):
        if self.camera.get_room() != room_id:
            self.camera.switch_to_room(room_id)

    def _stop_origin(self):
        """Orientation the current stop pans from; restored when the stop is re-run after a pause."""
        if self._origin is not None and self._origin[0] == self.current_index:
            _, yaw, pitch = self._origin
            self.camera.set_yaw(yaw)
            self.camera.set_pitch(pitch)
            return yaw, pitch
        yaw, pitch = self.camera.get_yaw(), self.camera.get_pitch()
        self._origin = (self.current_index, yaw, pitch)
        return yaw, pitch

    def _describe(self, stop, default_title, label):
        title = stop.get("title") or default_title
        description = stop.get("description") or f"{label} {self.current_index + 1}/{len(self.stops)}"
        return title, description

    def _dwell_ms(self, stop):
        try:
            duration = float(stop.get("duration") or 0)
        except (TypeError, ValueError):
            duration = 0
        return duration if duration > 0 else self.config.stop_duration_ms

    async def _execute_room_stop(self, gen, stop):
        room = self.rooms.get(stop.get("roomId"))
        if room is None:
            self._skip(stop, f"room {stop.get('roomId')} no longer exists")
            return True
        self._enter_room(room["id"])
        title, description = self._describe(stop, room.get("name") or "Room", "Stop")
        self.listener.show_info(title, description)
        if not self._live(gen):
            return False

        start_yaw, _ = self._stop_origin()
        duration = max(self.config.min_pan_duration_ms, self.pan_duration_ms())
        target_yaw = start_yaw + 2 * math.pi
        if not await self._animate(gen, duration, lambda e: self.camera.set_yaw(start_yaw + (target_yaw - start_yaw) * e)):
            return False

        if not await self._dwell(gen, self._dwell_ms(stop)):
            return False
        self.listener.clear_info()
        return True

    async def _execute_hotspot_stop(self, gen, stop):
        room_id = stop.get("roomId")
        room = self.rooms.get(room_id)
        if room is None:
            self._skip(stop, f"room {room_id} no longer exists")
            return True
        index, hotspot = find_hotspot(room, stop)
        if hotspot is None:
            self._skip(stop, f"hotspot {stop.get('hotspotIndex')} not found in room {room_id}")
            return True
        self._enter_room(room["id"])

        start_yaw, start_pitch = self._stop_origin()
        target_yaw = math.radians(float(hotspot.get("yaw", 0)))
        # The viewer's vertical axis points the other way round.
        target_pitch = math.radians(-float(hotspot.get("pitch", 0)))

        def frame(e):
            self.camera.set_yaw(start_yaw + (target_yaw - start_yaw) * e)
            self.camera.set_pitch(start_pitch + (target_pitch - start_pitch) * e)

        if not await self._animate(gen, self.pan_duration_ms(), frame):
            return False

        self._highlight = (room["id"], index)
        self.listener.highlight_hotspot(room["id"], index)
        target = self.rooms.get(hotspot.get("target")) or {}
        title, description = self._describe(stop, f"Passage to {target.get('name') or 'another room'}", "Hotspot")
        self.listener.show_info(title, description)
        if not self._live(gen):
            return False

        if not await self._dwell(gen, self._dwell_ms(stop)):
            return False
        self._highlight = None
        self.listener.clear_highlight(room["id"], index)
        self.listener.clear_info()
        return True

    async def _animate(self, gen, duration_ms, apply):
        """Frame loop; each frame checks that the run is still current before scheduling the next one."""
        duration = max(float(duration_ms), 1.0) / 1000.0
        started = self.clock.time()
        while True:
            await self.clock.sleep(self.config.frame_interval_s)
            if not self._live(gen):
                return False
            progress = min((self.clock.time() - started) / duration, 1.0)
            apply(ease_in_out(progress))
            if progress >= 1.0:
                return True

    async def _dwell(self, gen, duration_ms):
        self._progress.start(self._tick_progress(gen, duration_ms))
        await self.clock.sleep(duration_ms / 1000.0)
        if not self._live(gen):
            # The progress handle may already belong to a newer run.
            return False
        self._progress.cancel()
        return True

    async def _tick_progress(self, gen, duration_ms):
        started = self.clock.time()
        self.listener.set_progress(0.0)
        while self._live(gen):
            await self.clock.sleep(self.config.progress_interval_ms / 1000.0)
            if not self._live(gen):
                return
            elapsed_ms = (self.clock.time() - started) * 1000.0
            percent = min(elapsed_ms / duration_ms * 100.0, 100.0) if duration_ms > 0 else 100.0
            self.listener.set_progress(percent)
            if percent >= 100.0:
                return
