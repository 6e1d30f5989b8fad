import unittest

from docksync.companion import LoopbackTransport
from docksync.config import Settings
from docksync.consumers import EntryStatus
from docksync.fetcher import CACHE_BUST_PARAM, RateLimitedFetcher
from docksync.runtime import build_phone_runtime, build_watch_runtime
from docksync.shared_store import InMemoryBackend, SharedStateStore


class FakeClock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


class DummyResp:
    def __init__(self, payload):
        self.status_code = 200
        self.headers = {}
        self._payload = payload

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self):
        self.headers = {}
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        sid = url.rsplit("/", 1)[-1]
        self.calls.append((sid, params))
        return DummyResp({
            "id": sid,
            "commonName": f"Station {sid}",
            "lat": 51.51,
            "lon": -0.09,
            "additionalProperties": [
                {"key": "NbDocks", "value": "20"},
                {"key": "NbEmptyDocks", "value": "15"},
                {"key": "NbStandardBikes", "value": "5"},
            ],
        })

    def close(self):
        pass


class TestPhoneWatchSync(unittest.TestCase):
    """A favourite added on the phone reaches the watch and is fetched fresh there."""

    def setUp(self):
        self.clock = FakeClock()
        self.settings = Settings()
        self.phone_t, self.watch_t = LoopbackTransport.pair()

        self.phone_session = FakeSession()
        self.watch_session = FakeSession()
        self.phone = build_phone_runtime(
            self.settings,
            store=SharedStateStore(InMemoryBackend(), clock=self.clock),
            fetcher=self._fetcher(self.phone_session),
            transport=self.phone_t,
            clock=self.clock,
        )
        self.watch = build_watch_runtime(
            self.watch_t,
            self.settings,
            store=SharedStateStore(InMemoryBackend(), clock=self.clock),
            fetcher=self._fetcher(self.watch_session),
            clock=self.clock,
        )

    def tearDown(self):
        self.phone.stop()
        self.watch.stop()

    def _fetcher(self, session):
        return RateLimitedFetcher(
            "https://api.example.test/BikePoint",
            settings=self.settings,
            session=session,
            min_interval=0,
            wall_clock=self.clock,
        )

    def test_favorite_reaches_watch_on_next_poll(self):
        self.watch.companion.step()
        self.assertEqual(self.watch.favorites.ids(), [])

        # watch is out of range when the favourite is added, so the push is skipped
        self.watch_t.reachable = False
        self.phone.favorites.add("BikePoints_X", "Station X")
        self.assertEqual(self.phone.store.read_favorites()[0].sort_order, 0)
        self.watch_t.reachable = True

        self.clock.now += 30
        self.watch.companion.step()

        self.assertEqual(self.watch.favorites.ids(), ["BikePoints_X"])
        self.assertEqual(self.watch_session.calls, [("BikePoints_X", {CACHE_BUST_PARAM: 10_030})])
        snap = self.watch.store.read_snapshot()
        self.assertEqual(snap.station("BikePoints_X").standard_bikes, 5)
        self.assertEqual(snap.station_timestamps["BikePoints_X"], 10_030.0)

    def test_push_while_reachable_updates_watch_immediately(self):
        self.phone.favorites.add("BikePoints_Y", "Station Y")
        self.assertEqual([e.id for e in self.watch.store.read_favorites()], ["BikePoints_Y"])

    def test_watch_registry_is_read_only(self):
        with self.assertRaises(PermissionError):
            self.watch.favorites.add("BikePoints_Z", "Station Z")

    def test_unchanged_favorites_do_not_refetch(self):
        self.phone.favorites.add("BikePoints_Y", "Station Y")
        calls = len(self.watch_session.calls)
        self.clock.now += 30
        self.watch.companion.step()
        self.assertEqual(len(self.watch_session.calls), calls)

    def test_phone_mailbox_services_widget_request(self):
        self.phone.favorites.add("BikePoints_Y", "Station Y")
        timeline = self.phone.closest_widget.timeline()
        self.assertIsNone(timeline.decision.refresh_reason)

        self.phone.store.set_widget_binding("1", "BikePoints_W", "Station W")
        self.phone.interactive_widgets["1"].timeline()
        self.assertEqual(self.phone.store.peek_refresh_request().station_id, "BikePoints_W")

        self.phone.foreground.drain_mailbox()

        self.assertEqual(self.phone_session.calls[-1][0], "BikePoints_W")
        after = self.phone.interactive_widgets["1"].timeline()
        self.assertEqual(after.entries[0].status, EntryStatus.LIVE)
        self.assertEqual(after.entries[0].station.standard_bikes, 5)
        self.assertIsNone(self.phone.store.peek_refresh_request())

        self.phone.foreground.refresh()
        self.assertEqual(self.phone.interactive_widgets["1"].timeline().entries[0].status, EntryStatus.LIVE)

    def test_configurable_widget_pins_its_station(self):
        self.phone.favorites.add("BikePoints_Y", "Station Y")
        widget = self.phone.configurable_widget("BikePoints_V")
        self.assertIs(self.phone.configurable_widget("BikePoints_V"), widget)
        widget.timeline()

        self.phone.foreground.drain_mailbox()
        self.phone.foreground.refresh()

        self.assertEqual(widget.timeline().entries[0].status, EntryStatus.LIVE)
        self.assertIn("BikePoints_V", self.phone.foreground.keep_ids())


if __name__ == "__main__":
    unittest.main()
