"""Per-process TTL cache of station records."""

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from docksync.models import CacheEntry, StationRecord
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="ttl_cache")


class TTLCache:
    """Thread-safe station cache with lazy expiry.

    Entries past the TTL are reported as misses on read and dropped then;
    nothing runs in the background. The cache only saves network calls within
    one process and is never consulted by other processes.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.fetched_at > self.ttl

    def get(self, station_id: str) -> Optional[StationRecord]:
        entry = self.get_entry(station_id)
        return entry.record if entry else None

    def get_entry(self, station_id: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(station_id)
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                self._entries.pop(station_id, None)
                return None
            return entry

    def put(self, station_id: str, record: StationRecord, fetched_at: float | None = None) -> bool:
        """Cache `record`. Returns False when a newer fetch is already cached.

        `fetched_at` is the time the fetch was dispatched; a result that
        started before the cached one is discarded.
        """
        fetched_at = self._clock() if fetched_at is None else fetched_at
        with self._lock:
            current = self._entries.get(station_id)
            if current is not None and fetched_at < current.fetched_at:
                logger.debug(
                    "Discarding superseded fetch result",
                    extra={"station_id": station_id, "fetched_at": fetched_at, "cached_at": current.fetched_at},
                )
                return False
            self._entries[station_id] = CacheEntry(record=record, fetched_at=fetched_at)
            return True

    def invalidate(self, station_id: str) -> None:
        with self._lock:
            self._entries.pop(station_id, None)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def status(self) -> Tuple[int, Optional[float]]:
        """Return (live entry count, age of the oldest live entry)."""
        with self._lock:
            now = self._clock()
            ages = [now - e.fetched_at for e in self._entries.values() if not self._expired(e, now)]
        return len(ages), (max(ages) if ages else None)
