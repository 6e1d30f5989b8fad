import fnmatch
import os
import tempfile
import unittest

from docksync.models import FavoriteEntry, SortMode, StationRecord
from docksync.shared_store import InMemoryBackend, JsonCodec, SharedStateStore
from docksync.shared_store import store as store_mod
from docksync.shared_store.redis import RedisBackend
from docksync.shared_store.sql import SqlBackend


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakePipeline:
    def __init__(self, redis, fail=False):
        self.redis = redis
        self.fail = fail
        self.ops = []

    def set(self, key, value):
        self.ops.append((key, value))

    def execute(self):
        if self.fail:
            raise RuntimeError("EXECABORT")
        for key, value in self.ops:
            self.redis.store[key] = value.encode("utf-8")


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.fail_pipeline = False
        self.closed = False

    def get(self, key):
        return self.store.get(key)

    def mget(self, keys):
        return [self.store.get(k) for k in keys]

    def pipeline(self, transaction=True):
        return FakePipeline(self, fail=self.fail_pipeline)

    def delete(self, *keys):
        for k in keys:
            self.store.pop(k, None)

    def getdel(self, key):
        return self.store.pop(key, None)

    def scan_iter(self, match=None):
        return [k.encode("utf-8") for k in list(self.store) if match is None or fnmatch.fnmatch(k, match)]

    def close(self):
        self.closed = True


class FailingBackend(InMemoryBackend):
    def set_many(self, items):
        raise RuntimeError("disk full")


class TamperingCodec(JsonCodec):
    """Decodes station payloads to a different station, as a corrupted round-trip would."""

    def decode(self, adapter, raw):
        value = super().decode(adapter, raw)
        if isinstance(value, StationRecord):
            return value.model_copy(update={"standard_bikes": value.standard_bikes + 1})
        return value


class ExplodingCodec(JsonCodec):
    def encode(self, adapter, value):
        raise TypeError("cannot encode")


def _record(sid="BikePoints_1", bikes=3):
    return StationRecord(
        id=sid,
        name=f"Station {sid}",
        latitude=51.5,
        longitude=-0.1,
        standard_bikes=bikes,
        total_docks=10,
        raw_empty_spaces=10 - bikes,
    )


class SharedStoreContract:
    """Store behaviour every backend must support. Subclasses provide make_backend()."""

    def make_backend(self):
        raise NotImplementedError

    def setUp(self):
        self.clock = FakeClock()
        self.backend = self.make_backend()
        self.store = SharedStateStore(self.backend, clock=self.clock)

    def tearDown(self):
        self.backend.close()

    def test_favorites_round_trip_sorted(self):
        entries = [
            FavoriteEntry(id="B", name="Bravo", sort_order=1),
            FavoriteEntry(id="A", name="Alpha", sort_order=0),
        ]
        self.assertTrue(self.store.write_favorites(entries))
        self.assertEqual([e.id for e in self.store.read_favorites()], ["A", "B"])

    def test_missing_favorites_read_empty(self):
        self.assertEqual(self.store.read_favorites(), [])

    def test_write_station_updates_primary_and_last_known_good(self):
        rec = _record()
        self.assertTrue(self.store.write_station(rec))

        snap = self.store.read_snapshot()
        self.assertEqual(snap.primary, rec)
        self.assertEqual(snap.primary_timestamp, 1000.0)
        self.assertEqual(snap.last_known_good, rec)
        self.assertEqual(snap.last_known_good_timestamp, 1000.0)
        self.assertEqual(snap.station_timestamps, {"BikePoints_1": 1000.0})
        self.assertEqual(self.store.station_timestamp("BikePoints_1"), 1000.0)
        self.assertEqual(self.store.primary_timestamp(), 1000.0)

    def test_write_stations_merges_by_id(self):
        self.store.write_stations([_record("A"), _record("B")])
        self.clock.now = 1010.0
        self.store.write_stations([_record("B", bikes=7)])

        snap = self.store.read_snapshot()
        self.assertEqual([r.id for r in snap.stations], ["A", "B"])
        self.assertEqual(snap.station("B").standard_bikes, 7)
        self.assertEqual(snap.station_timestamps, {"A": 1000.0, "B": 1010.0})
        self.assertEqual(snap.stations_timestamp, 1010.0)
        self.assertEqual(len(snap.last_known_good_stations), 2)

    def test_write_stations_keep_ids_restricts_and_orders(self):
        self.store.write_stations([_record("A"), _record("B"), _record("C")])
        self.store.write_stations([_record("C")], keep_ids=["C", "A"])
        self.assertEqual([r.id for r in self.store.read_snapshot().stations], ["C", "A"])

    def test_verification_failure_leaves_store_untouched(self):
        self.store.write_station(_record(bikes=3))
        before = self.backend.get_many([store_mod.PRIMARY_KEY, store_mod.LKG_KEY, store_mod.PRIMARY_TS_KEY])

        tampered = SharedStateStore(self.backend, clock=self.clock, codec=TamperingCodec())
        self.clock.now = 2000.0
        with self.assertLogs("docksync.shared_store.store", level="ERROR"):
            self.assertFalse(tampered.write_station(_record(bikes=5)))

        after = self.backend.get_many([store_mod.PRIMARY_KEY, store_mod.LKG_KEY, store_mod.PRIMARY_TS_KEY])
        self.assertEqual(before, after)

    def test_encode_failure_is_not_committed(self):
        broken = SharedStateStore(self.backend, clock=self.clock, codec=ExplodingCodec())
        self.assertFalse(broken.write_favorites([FavoriteEntry(id="A", name="A")]))
        self.assertIsNone(self.backend.get(store_mod.FAVORITES_KEY))

    def test_unreadable_values_read_as_missing(self):
        self.backend.set_many({store_mod.PRIMARY_KEY: "{not json", store_mod.FAVORITES_KEY: "[1, 2]"})
        snap = self.store.read_snapshot()
        self.assertIsNone(snap.primary)
        self.assertEqual(self.store.read_favorites(), [])

    def test_clear_station_data_keeps_last_known_good(self):
        self.store.write_station(_record("A"))
        self.store.write_stations([_record("A"), _record("B")])

        self.store.clear_station_data()

        snap = self.store.read_snapshot()
        self.assertIsNone(snap.primary)
        self.assertEqual(snap.stations, [])
        self.assertEqual(snap.station_timestamps, {})
        self.assertIsNotNone(snap.last_known_good)
        self.assertEqual(len(snap.last_known_good_stations), 2)

    def test_clear_station_data_keeps_listed_stations(self):
        self.store.write_station(_record("A"))
        self.store.write_stations([_record("A"), _record("W")])

        self.store.clear_station_data(keep_ids=["W"])

        snap = self.store.read_snapshot()
        self.assertIsNone(snap.primary)
        self.assertEqual([r.id for r in snap.stations], ["W"])
        self.assertEqual(list(snap.station_timestamps), ["W"])

    def test_prune_stations_drops_others_and_their_timestamps(self):
        self.store.write_stations([_record("A"), _record("B"), _record("C")])

        self.assertTrue(self.store.prune_stations(["C", "A"]))

        snap = self.store.read_snapshot()
        self.assertEqual([r.id for r in snap.stations], ["A", "C"])
        self.assertIsNone(self.store.station_timestamp("B"))
        self.assertIsNotNone(self.store.station_timestamp("C"))

    def test_last_known_good_expires_at_max_age(self):
        self.store.write_station(_record("A"))
        self.store.write_stations([_record("A")])
        self.clock.now = 1599.0
        self.assertIsNotNone(self.store.last_known_good())
        self.assertEqual(len(self.store.last_known_good_stations()), 1)
        self.clock.now = 1600.0
        self.assertIsNone(self.store.last_known_good())
        self.assertEqual(self.store.last_known_good_stations(), [])

    def test_mailbox_latest_request_wins_and_is_consumed_once(self):
        self.store.request_refresh("stale", "widget:closest")
        self.clock.now = 1005.0
        posted = self.store.request_refresh("no_data", "widget:interactive:2", station_id="A", widget_id="2")
        self.assertEqual(self.store.peek_refresh_request(), posted)

        consumed = self.store.consume_refresh_request()
        self.assertEqual(consumed.reason, "no_data")
        self.assertEqual(consumed.station_id, "A")
        self.assertIsNone(self.store.consume_refresh_request())

    def test_mailbox_drops_expired_request(self):
        self.store.request_refresh("stale", "widget:closest")
        self.clock.now = 1060.0
        self.assertIsNone(self.store.consume_refresh_request())
        self.assertIsNone(self.store.peek_refresh_request())

    def test_mailbox_drops_future_request(self):
        self.store.request_refresh("stale", "widget:closest")
        self.clock.now = 990.0
        self.assertIsNone(self.store.consume_refresh_request())

    def test_snapshot_includes_pending_request(self):
        self.store.request_refresh("error", "watch")
        self.assertEqual(self.store.read_snapshot().pending_refresh_request.source, "watch")

    def test_widget_bindings(self):
        self.assertTrue(self.store.set_widget_binding("2", "BikePoints_5", "Waterloo"))
        self.store.set_widget_binding("3", "BikePoints_6")
        binding = self.store.widget_binding("2")
        self.assertEqual(binding.station_id, "BikePoints_5")
        self.assertEqual(binding.station_name, "Waterloo")
        self.assertEqual(set(self.store.widget_bindings()), {"2", "3"})

        self.store.clear_widget_binding("2")
        self.assertIsNone(self.store.widget_binding("2"))

    def test_pending_configuration(self):
        self.assertIsNone(self.store.pending_configuration())
        self.store.set_pending_configuration("4")
        self.assertEqual(self.store.pending_configuration(), "4")
        self.store.clear_pending_configuration()
        self.assertIsNone(self.store.pending_configuration())

    def test_sort_mode_defaults_to_distance(self):
        self.assertEqual(self.store.read_sort_mode(), SortMode.DISTANCE)
        self.store.write_sort_mode(SortMode.ALPHABETICAL)
        self.assertEqual(self.store.read_sort_mode(), SortMode.ALPHABETICAL)

    def test_subscribers_see_committed_keys(self):
        seen = []
        unsubscribe = self.store.subscribe(seen.append)
        self.store.write_favorites([FavoriteEntry(id="A", name="A")])
        unsubscribe()
        self.store.write_sort_mode(SortMode.MANUAL)
        self.assertEqual(seen, [frozenset({store_mod.FAVORITES_KEY})])

    def test_failing_listener_does_not_break_writes(self):
        def boom(keys):
            raise RuntimeError("listener bug")

        self.store.subscribe(boom)
        self.assertTrue(self.store.write_sort_mode(SortMode.MANUAL))


class TestInMemoryStore(SharedStoreContract, unittest.TestCase):
    def make_backend(self):
        return InMemoryBackend()

    def test_commit_failure_returns_false(self):
        store = SharedStateStore(FailingBackend(), clock=self.clock)
        with self.assertLogs("docksync.shared_store.store", level="ERROR"):
            self.assertFalse(store.write_station(_record()))
        self.assertIsNone(store.request_refresh("stale", "watch"))


class TestRedisStore(SharedStoreContract, unittest.TestCase):
    def make_backend(self):
        self.redis = FakeRedis()
        return RedisBackend(self.redis, prefix="test:")

    def test_keys_are_prefixed(self):
        self.store.write_sort_mode(SortMode.MANUAL)
        self.assertIn("test:sort_mode", self.redis.store)

    def test_pipeline_failure_is_reported(self):
        self.redis.fail_pipeline = True
        self.assertFalse(self.store.write_station(_record()))
        self.assertEqual(self.redis.store, {})

    def test_close_closes_client(self):
        self.backend.close()
        self.assertTrue(self.redis.closed)


class TestSqlStore(SharedStoreContract, unittest.TestCase):
    def make_backend(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "shared.db")
        return SqlBackend.from_url(f"sqlite:///{self.db_path}")

    def tearDown(self):
        super().tearDown()
        self.tmpdir.cleanup()

    def test_two_processes_share_the_database(self):
        other_backend = SqlBackend.from_url(f"sqlite:///{self.db_path}")
        try:
            other = SharedStateStore(other_backend, clock=self.clock)
            self.store.write_station(_record("A", bikes=4))
            self.assertEqual(other.read_snapshot().primary.standard_bikes, 4)

            other.request_refresh("stale", "widget:closest")
            self.assertIsNotNone(self.store.consume_refresh_request())
            self.assertIsNone(other.consume_refresh_request())
        finally:
            other_backend.close()

    def test_keys_by_prefix(self):
        self.backend.set_many({"station_timestamp:A": "1", "station_timestamp:B": "2", "other": "3"})
        self.assertEqual(self.backend.keys("station_timestamp:"), ["station_timestamp:A", "station_timestamp:B"])


if __name__ == "__main__":
    unittest.main()
