import json
import os
import shutil
import tempfile
import unittest

from roomtour.store import ROOMS, TOUR_SCENARIO, RecordStore


class RecordStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp(prefix="roomtour_store_")
        self.store = RecordStore(os.path.join(self.tmp, "data"))

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_missing_collection_returns_default(self):
        self.assertEqual(self.store.get(ROOMS, []), [])
        self.assertIsNone(self.store.get(TOUR_SCENARIO))

    def test_corrupt_collection_returns_default(self):
        with open(self.store.path(ROOMS), "w", encoding="utf-8") as f:
            f.write("[{broken")
        self.assertEqual(self.store.get(ROOMS, []), [])

    def test_put_writes_indented_json_without_temp_files(self):
        rooms = [{"id": 1, "name": "Phòng 1"}]
        self.store.put(ROOMS, rooms)
        self.assertEqual(self.store.get(ROOMS), rooms)
        with open(self.store.path(ROOMS), encoding="utf-8") as f:
            text = f.read()
        self.assertIn("Phòng 1", text)
        self.assertIn('\n  {', text)
        self.assertEqual(os.listdir(self.store.data_dir), ["rooms.json"])

    def test_last_write_wins(self):
        self.store.put(ROOMS, [{"id": 1}])
        self.store.put(ROOMS, [{"id": 2}])
        self.assertEqual(self.store.get(ROOMS), [{"id": 2}])

    def test_delete(self):
        self.assertFalse(self.store.delete(TOUR_SCENARIO))
        self.store.put(TOUR_SCENARIO, {"name": "x", "stops": []})
        self.assertTrue(self.store.exists(TOUR_SCENARIO))
        self.assertTrue(self.store.delete(TOUR_SCENARIO))
        self.assertFalse(self.store.exists(TOUR_SCENARIO))

    def test_room_configs_live_in_subdirectory(self):
        key = self.store.room_api_config_key(7)
        self.store.put(key, {"refreshInterval": 1})
        path = os.path.join(self.store.data_dir, "room-api-configs", "7.json")
        with open(path, encoding="utf-8") as f:
            self.assertEqual(json.load(f), {"refreshInterval": 1})


if __name__ == "__main__":
    unittest.main()
