import unittest

from roomtour.tour import (
    STOP_HOTSPOT,
    STOP_ROOM,
    build_tour_route,
    get_pan_duration,
    normalize_scenario,
    resolve_tour_route,
)


def sample_rooms():
    # Listed out of id order on purpose.
    return [
        {"id": 3, "name": "C", "hotspots": []},
        {"id": 1, "name": "A", "hotspots": [{"id": "h-ab", "yaw": 10, "pitch": 0, "target": 2}]},
        {"id": 2, "name": "B", "hotspots": [{"id": "h-bx", "yaw": 0, "pitch": 0, "target": 99}]},
    ]


class BuildTourRouteTests(unittest.TestCase):
    def test_rooms_then_hotspots_by_ascending_id(self):
        route = build_tour_route(sample_rooms())
        self.assertEqual(
            [(s["type"], s["roomId"]) for s in route],
            [(STOP_ROOM, 1), (STOP_HOTSPOT, 1), (STOP_ROOM, 2), (STOP_ROOM, 3)],
        )
        hotspot = route[1]
        self.assertEqual(hotspot["hotspotIndex"], 0)
        self.assertEqual(hotspot["hotspotId"], "h-ab")
        self.assertEqual(hotspot["targetRoomName"], "B")
        self.assertEqual(route[0]["roomName"], "A")

    def test_dangling_target_is_left_out(self):
        route = build_tour_route(sample_rooms())
        self.assertFalse(any(s["type"] == STOP_HOTSPOT and s["roomId"] == 2 for s in route))

    def test_deterministic(self):
        rooms = sample_rooms()
        self.assertEqual(build_tour_route(rooms), build_tour_route(list(reversed(rooms))))

    def test_empty(self):
        self.assertEqual(build_tour_route([]), [])
        self.assertEqual(build_tour_route(None), [])

    def test_every_stop_references_existing_room(self):
        rooms = sample_rooms()
        ids = {r["id"] for r in rooms}
        by_id = {r["id"]: r for r in rooms}
        for stop in build_tour_route(rooms):
            self.assertIn(stop["roomId"], ids)
            if stop["type"] == STOP_HOTSPOT:
                target = by_id[stop["roomId"]]["hotspots"][stop["hotspotIndex"]]["target"]
                self.assertIn(target, ids)


class ScenarioTests(unittest.TestCase):
    def test_scenario_stops_win(self):
        scenario = {"name": "Intro", "stops": [{"type": "room", "roomId": 3}]}
        self.assertEqual(resolve_tour_route(sample_rooms(), scenario), [{"type": "room", "roomId": 3}])

    def test_scenario_stops_are_not_validated(self):
        scenario = {"name": "Stale", "stops": [{"type": "hotspot", "roomId": 42, "hotspotIndex": 7}]}
        self.assertEqual(resolve_tour_route(sample_rooms(), scenario), scenario["stops"])

    def test_falls_back_to_derived_route(self):
        derived = build_tour_route(sample_rooms())
        for scenario in (None, {}, {"stops": [{"type": "room", "roomId": 1}]}, "nope"):
            self.assertEqual(resolve_tour_route(sample_rooms(), scenario), derived)

    def test_empty_authored_stop_list_is_used_as_is(self):
        self.assertEqual(resolve_tour_route(sample_rooms(), {"name": "x", "stops": []}), [])

    def test_normalize_scenario(self):
        self.assertIsNone(normalize_scenario(None))
        self.assertIsNone(normalize_scenario([]))
        self.assertIsNone(normalize_scenario({"name": "x"}))
        self.assertIsNone(normalize_scenario({"name": "", "stops": []}))
        ok = {"name": "x", "stops": []}
        self.assertIs(normalize_scenario(ok), ok)

    def test_pan_duration(self):
        self.assertEqual(get_pan_duration(None, 8000), 8000)
        self.assertEqual(get_pan_duration({"cameraPanDuration": 3000}, 8000), 3000)
        self.assertEqual(get_pan_duration({"cameraPanDuration": "2500"}, 8000), 2500)
        self.assertEqual(get_pan_duration({"cameraPanDuration": 999}, 8000), 8000)
        self.assertEqual(get_pan_duration({"cameraPanDuration": 1000}, 8000), 1000)
        self.assertEqual(get_pan_duration({"cameraPanDuration": "fast"}, 8000), 8000)
        self.assertEqual(get_pan_duration({"cameraPanDuration": float("nan")}, 8000), 8000)
        self.assertEqual(get_pan_duration({"cameraPanDuration": float("inf")}, 8000), 8000)


if __name__ == "__main__":
    unittest.main()
