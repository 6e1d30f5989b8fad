"""Station lookups that consult the process-local cache before the network."""

from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, List

from docksync.fetcher import RateLimitedFetcher
from docksync.models import StationRecord
from docksync.ttl_cache import TTLCache
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="stations")


class StationService:
    """Cache-first access to station records for one process.

    Results are cached with the time their fetch was dispatched, so a slow
    response that was overtaken by a forced refetch is discarded on arrival.
    """

    def __init__(self, fetcher: RateLimitedFetcher, cache: TTLCache, clock: Callable[[], float] = time.time) -> None:
        self.fetcher = fetcher
        self.cache = cache
        self._clock = clock

    def get(self, station_id: str, force_bust: bool = False) -> StationRecord:
        if force_bust:
            self.cache.invalidate(station_id)
        else:
            cached = self.cache.get(station_id)
            if cached is not None:
                return cached

        started = self._clock()
        record = self.fetcher.fetch(station_id, force_bust=force_bust)
        if not self.cache.put(record.id, record, fetched_at=started):
            return self.cache.get(record.id) or record
        return record

    def get_many(self, station_ids: Iterable[str], force_bust: bool = False) -> List[StationRecord]:
        """Return records in input order; ids that could not be fetched are omitted."""
        ordered = list(dict.fromkeys(station_ids))
        found: Dict[str, StationRecord] = {}

        if force_bust:
            for sid in ordered:
                self.cache.invalidate(sid)
            missing = ordered
        else:
            for sid in ordered:
                cached = self.cache.get(sid)
                if cached is not None:
                    found[sid] = cached
            missing = [sid for sid in ordered if sid not in found]

        if missing:
            logger.debug(
                "Fetching stations missing from cache",
                extra={"missing": len(missing), "cached": len(found), "force_bust": force_bust},
            )
            started = self._clock()
            for record in self.fetcher.fetch_many(missing, force_bust=force_bust):
                if self.cache.put(record.id, record, fetched_at=started):
                    found[record.id] = record
                else:
                    found[record.id] = self.cache.get(record.id) or record

        return [found[sid] for sid in ordered if sid in found]

    def all_stations(self, force_bust: bool = False) -> List[StationRecord]:
        """Fetch the full collection and prime the cache with it."""
        started = self._clock()
        records = self.fetcher.fetch_all(force_bust=force_bust)
        for record in records:
            self.cache.put(record.id, record, fetched_at=started)
        return records
