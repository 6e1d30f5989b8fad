import unittest

from docksync.errors import DecodeError
from docksync.models import (
    FavoriteEntry,
    SharedSnapshot,
    StationRecord,
    decode_favorites,
    encode_favorites,
)


def _station_payload(sid="BikePoints_1", name="River Street, Clerkenwell", bikes="5", ebikes="2",
                     empty="10", docks="19", installed="true", locked="false"):
    return {
        "$type": "Tfl.Api.Presentation.Entities.Place, Tfl.Api.Presentation.Entities",
        "id": sid,
        "commonName": name,
        "lat": 51.529163,
        "lon": -0.10997,
        "additionalProperties": [
            {"key": "Installed", "value": installed},
            {"key": "Locked", "value": locked},
            {"key": "NbDocks", "value": docks},
            {"key": "NbEmptyDocks", "value": empty},
            {"key": "NbStandardBikes", "value": bikes},
            {"key": "NbEBikes", "value": ebikes},
        ],
    }


def _record(**kwargs):
    base = dict(id="BikePoints_1", name="River Street", latitude=51.5, longitude=-0.1)
    base.update(kwargs)
    return StationRecord(**base)


class TestStationRecord(unittest.TestCase):
    def test_from_api_parses_counts_and_flags(self):
        rec = StationRecord.from_api(_station_payload())
        self.assertEqual(rec.id, "BikePoints_1")
        self.assertEqual(rec.name, "River Street, Clerkenwell")
        self.assertEqual(rec.standard_bikes, 5)
        self.assertEqual(rec.e_bikes, 2)
        self.assertEqual(rec.total_docks, 19)
        self.assertEqual(rec.raw_empty_spaces, 10)
        self.assertTrue(rec.installed)
        self.assertFalse(rec.locked)
        self.assertTrue(rec.is_available)

    def test_consistent_counts_trust_raw_empty_spaces(self):
        rec = _record(standard_bikes=5, e_bikes=2, total_docks=19, raw_empty_spaces=10)
        self.assertEqual(rec.total_bikes, 7)
        self.assertEqual(rec.broken_docks, 2)
        self.assertTrue(rec.has_broken_docks)
        self.assertEqual(rec.available_spaces, 10)

    def test_inconsistent_counts_are_recomputed(self):
        rec = _record(standard_bikes=8, total_docks=10, raw_empty_spaces=5)
        self.assertEqual(rec.broken_docks, 0)
        self.assertEqual(rec.available_spaces, 2)

    def test_counts_always_add_up_to_total_docks(self):
        for docks in range(1, 9):
            for bikes in range(0, docks + 1):
                for empty in range(0, 10):
                    rec = _record(standard_bikes=bikes, total_docks=docks, raw_empty_spaces=empty)
                    self.assertEqual(rec.available_spaces + rec.total_bikes + rec.broken_docks, docks)
                    self.assertGreaterEqual(rec.broken_docks, 0)
                    if bikes + empty == docks:
                        self.assertEqual(rec.broken_docks, 0)

    def test_locked_or_uninstalled_station_is_unavailable(self):
        self.assertFalse(_record(locked=True).is_available)
        self.assertFalse(_record(installed=False).is_available)

    def test_missing_and_garbage_properties_read_as_zero(self):
        payload = _station_payload(bikes="n/a", ebikes=None)
        payload["additionalProperties"] = [p for p in payload["additionalProperties"] if p["key"] != "NbDocks"]
        rec = StationRecord.from_api(payload)
        self.assertEqual(rec.standard_bikes, 0)
        self.assertEqual(rec.e_bikes, 0)
        self.assertEqual(rec.total_docks, 0)

    def test_flags_are_case_insensitive(self):
        rec = StationRecord.from_api(_station_payload(installed="True", locked="TRUE"))
        self.assertTrue(rec.installed)
        self.assertTrue(rec.locked)

    def test_wrong_shape_raises_decode_error(self):
        with self.assertRaises(DecodeError):
            StationRecord.from_api({"id": "BikePoints_1", "lat": 1.0})
        with self.assertRaises(DecodeError):
            StationRecord.from_api(["not", "a", "station"])

    def test_derived_fields_are_not_serialized(self):
        dumped = _record(standard_bikes=1, total_docks=4).model_dump()
        for derived in ("total_bikes", "broken_docks", "available_spaces", "is_available"):
            self.assertNotIn(derived, dumped)

    def test_records_are_immutable(self):
        rec = _record()
        with self.assertRaises(Exception):
            rec.standard_bikes = 3

    def test_json_round_trip(self):
        rec = StationRecord.from_api(_station_payload())
        self.assertEqual(StationRecord.model_validate_json(rec.model_dump_json()), rec)

    def test_distance_from(self):
        rec = _record(latitude=51.5, longitude=-0.1)
        self.assertAlmostEqual(rec.distance_from(51.5, -0.1), 0.0, places=3)
        # one degree of latitude is roughly 111 km
        self.assertAlmostEqual(rec.distance_from(50.5, -0.1) / 1000, 111.2, delta=0.5)


class TestFavoriteEntry(unittest.TestCase):
    def test_wire_format_uses_companion_keys(self):
        entry = FavoriteEntry(id="BikePoints_1", name="River Street", sort_order=2)
        self.assertEqual(entry.to_wire(), {"id": "BikePoints_1", "commonName": "River Street", "sortOrder": 2})

    def test_round_trip(self):
        entry = FavoriteEntry(id="BikePoints_1", name="River Street", sort_order=2)
        self.assertEqual(FavoriteEntry.model_validate(entry.to_wire()), entry)
        entries = [entry, FavoriteEntry(id="BikePoints_2", name="Phillimore Gardens", sort_order=3)]
        self.assertEqual(decode_favorites(encode_favorites(entries)), entries)

    def test_decodes_legacy_keys(self):
        entries = decode_favorites([{"id": "BikePoints_9", "name": "Old", "sort_order": 0}])
        self.assertEqual(entries[0].name, "Old")

    def test_malformed_list_raises_decode_error(self):
        with self.assertRaises(DecodeError):
            decode_favorites('[{"id": ""}]')
        with self.assertRaises(DecodeError):
            decode_favorites("not json")


class TestSharedSnapshot(unittest.TestCase):
    def test_station_prefers_list_then_primary(self):
        a = _record(id="A", name="A")
        b = _record(id="B", name="B")
        snap = SharedSnapshot(primary=b, stations=[a])
        self.assertEqual(snap.station("A"), a)
        self.assertEqual(snap.station("B"), b)
        self.assertIsNone(snap.station("C"))

    def test_fallback_station_respects_max_age(self):
        a = _record(id="A", name="A")
        snap = SharedSnapshot(last_known_good_stations=[a], last_known_good_stations_timestamp=1000.0)
        self.assertEqual(snap.fallback_station("A", now=1599.0, max_age=600), a)
        self.assertIsNone(snap.fallback_station("A", now=1600.0, max_age=600))


if __name__ == "__main__":
    unittest.main()
