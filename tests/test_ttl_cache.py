import unittest

from docksync.models import StationRecord
from docksync.ttl_cache import TTLCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _record(sid="A", bikes=1):
    return StationRecord(id=sid, name=sid, latitude=51.5, longitude=-0.1, standard_bikes=bikes, total_docks=10)


class TestTTLCache(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = TTLCache(ttl_seconds=60, clock=self.clock)

    def test_hit_within_ttl(self):
        rec = _record()
        self.assertTrue(self.cache.put("A", rec))
        self.clock.now += 60
        self.assertEqual(self.cache.get("A"), rec)
        self.assertEqual(self.cache.get_entry("A").fetched_at, 1000.0)

    def test_expired_entry_is_a_miss_and_dropped(self):
        self.cache.put("A", _record())
        self.clock.now += 61
        self.assertIsNone(self.cache.get("A"))
        self.clock.now = 1000.0
        self.assertIsNone(self.cache.get("A"))

    def test_older_fetch_does_not_overwrite_newer(self):
        newer = _record(bikes=5)
        older = _record(bikes=1)
        self.cache.put("A", newer, fetched_at=1000.0)
        self.assertFalse(self.cache.put("A", older, fetched_at=990.0))
        self.assertEqual(self.cache.get("A"), newer)
        self.assertTrue(self.cache.put("A", older, fetched_at=1000.0))

    def test_invalidate(self):
        self.cache.put("A", _record("A"))
        self.cache.put("B", _record("B"))
        self.cache.invalidate("A")
        self.assertIsNone(self.cache.get("A"))
        self.assertIsNotNone(self.cache.get("B"))
        self.cache.invalidate_all()
        self.assertIsNone(self.cache.get("B"))

    def test_status_counts_live_entries(self):
        self.assertEqual(self.cache.status(), (0, None))
        self.cache.put("A", _record("A"), fetched_at=950.0)
        self.cache.put("B", _record("B"), fetched_at=990.0)
        self.cache.put("C", _record("C"), fetched_at=900.0)
        count, oldest = self.cache.status()
        self.assertEqual(count, 2)
        self.assertEqual(oldest, 50.0)


if __name__ == "__main__":
    unittest.main()
