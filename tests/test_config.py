import os
import unittest

from docksync.config import Settings


class _EnvPatch:
    """Set environment variables for the duration of a test."""

    def __init__(self, **values):
        self.values = values
        self.previous = {}

    def __enter__(self):
        for key, value in self.values.items():
            self.previous[key] = os.environ.get(key)
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        return self

    def __exit__(self, *exc):
        for key, value in self.previous.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


class TestConfig(unittest.TestCase):
    def test_settings_defaults(self):
        with _EnvPatch(DOCKSYNC_API_BASE_URL=None, DOCKSYNC_MIN_REQUEST_INTERVAL_SECONDS=None,
                       DOCKSYNC_STORE_BACKEND=None):
            s = Settings()
            self.assertEqual(s.stations_url, "https://api.tfl.gov.uk/BikePoint")
            self.assertEqual(s.min_request_interval_seconds, 2.0)
            self.assertEqual(s.cache_ttl_seconds, 60.0)
            self.assertEqual(s.last_known_good_max_age_seconds, 600.0)
            self.assertEqual(s.store_backend, "memory")
            self.assertEqual(s.companion_max_failures, 10)

    def test_settings_env_override(self):
        with _EnvPatch(DOCKSYNC_API_BASE_URL="http://example.com/", DOCKSYNC_STATIONS_PATH="bikes/"):
            s = Settings()
            self.assertEqual(s.api_base_url, "http://example.com")
            self.assertEqual(s.stations_url, "http://example.com/bikes")

    def test_numeric_override(self):
        with _EnvPatch(DOCKSYNC_MIN_REQUEST_INTERVAL_SECONDS="0.5", DOCKSYNC_CACHE_BUST_EVERY="2"):
            s = Settings()
            self.assertEqual(s.min_request_interval_seconds, 0.5)
            self.assertEqual(s.cache_bust_every, 2)

    def test_unrelated_env_is_ignored(self):
        with _EnvPatch(DOCKSYNC_NOT_A_SETTING="x"):
            Settings()


if __name__ == "__main__":
    unittest.main()
