"""Throttled, de-duplicating HTTP client for the remote station API.

One fetcher exists per process. All outbound requests pass through a single
serial gate that enforces a minimum spacing between dispatches; requests
that arrive early wait for the window instead of being dropped.
"""
from __future__ import annotations

import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

import requests

from docksync import config
from docksync.errors import (
    DecodeError,
    FetchError,
    InvalidRequestError,
    NetworkError,
    OfflineError,
    RateLimitedError,
)
from docksync.models import StationRecord
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="fetcher")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}
CACHE_BUST_PARAM = "cb"

_STATION_ID_RE = re.compile(r"^[A-Za-z0-9_.:\-]+$")


def _retry_after(value: Optional[str]) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class RateLimitedFetcher:
    """Station API client with spacing, single-flight and bounded retries."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        settings: config.Settings | None = None,
        session: requests.Session | None = None,
        is_online: Callable[[], bool] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        min_interval: float | None = None,
        max_retries: int | None = None,
        max_workers: int | None = None,
    ) -> None:
        settings = settings or config.settings
        self.base_url = (base_url or settings.stations_url).rstrip("/")
        self.timeout = settings.request_timeout_seconds
        self.min_interval = settings.min_request_interval_seconds if min_interval is None else min_interval
        # at least one attempt is always made
        self.max_retries = max(0, settings.max_retries if max_retries is None else max_retries)
        self.session = session or requests.Session()
        self.session.headers.setdefault("Accept", "application/json")
        self._is_online = is_online or (lambda: True)
        self._monotonic = monotonic
        self._wall_clock = wall_clock
        self._sleep = sleep

        self._throttle_lock = threading.Lock()
        self._last_dispatch: float | None = None
        self._inflight_lock = threading.Lock()
        self._inflight: Dict[str, Future] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.fetch_workers,
            thread_name_prefix="station-fetch",
        )
        self.dispatch_count = 0

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def fetch(self, station_id: str, force_bust: bool = False) -> StationRecord:
        """Fetch one station.

        Concurrent non-bust calls for the same id share a single request and
        all receive its result (or its exception). Bust calls always dispatch.
        """
        station_id = self._validate_id(station_id)
        self._ensure_online(station_id)

        if force_bust:
            return self._request_station(station_id, force_bust=True)

        with self._inflight_lock:
            future = self._inflight.get(station_id)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[station_id] = future

        if not owner:
            logger.debug("Joining in-flight fetch", extra={"station_id": station_id})
            return future.result()

        try:
            record = self._request_station(station_id, force_bust=False)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(record)
            return record
        finally:
            with self._inflight_lock:
                self._inflight.pop(station_id, None)

    def fetch_many(self, station_ids: Iterable[str], force_bust: bool = False) -> List[StationRecord]:
        """Fetch several stations concurrently, omitting the ones that fail.

        The result follows the order of `station_ids` with duplicates removed.
        Raises OfflineError up front when there is no connectivity.
        """
        ordered = list(dict.fromkeys(station_ids))
        if not ordered:
            return []
        self._ensure_online(None)

        futures = [(sid, self._executor.submit(self.fetch, sid, force_bust)) for sid in ordered]
        results: List[StationRecord] = []
        for sid, future in futures:
            try:
                results.append(future.result())
            except FetchError as exc:
                logger.warning(
                    "Dropping station from batch fetch",
                    extra={"station_id": sid, "error": type(exc).__name__, "detail": str(exc)},
                )
        logger.info(
            "Batch fetch complete",
            extra={"requested": len(ordered), "returned": len(results), "force_bust": force_bust},
        )
        return results

    def fetch_all(self, force_bust: bool = False) -> List[StationRecord]:
        """Fetch the whole station collection. Malformed members are skipped."""
        self._ensure_online(None)
        payload = self._request(self.base_url, station_id=None, force_bust=force_bust, parse=_expect_list)
        records: List[StationRecord] = []
        for item in payload:
            try:
                records.append(StationRecord.from_api(item))
            except DecodeError as exc:
                logger.warning("Skipping malformed station in collection", extra={"detail": str(exc)})
        return records

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self.session.close()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_id(station_id: str) -> str:
        if not isinstance(station_id, str) or not _STATION_ID_RE.match(station_id.strip()):
            raise InvalidRequestError(f"Invalid station id {station_id!r}", station_id=str(station_id))
        return station_id.strip()

    def _ensure_online(self, station_id: str | None) -> None:
        if not self._is_online():
            logger.info("Offline; skipping network call", extra={"station_id": station_id})
            raise OfflineError("No network connectivity", station_id=station_id)

    def _wait_for_slot(self) -> None:
        """Serial gate: block until `min_interval` has passed since the last dispatch."""
        with self._throttle_lock:
            now = self._monotonic()
            if self._last_dispatch is not None:
                wait = self._last_dispatch + self.min_interval - now
                if wait > 0:
                    logger.debug("Throttling request", extra={"wait_seconds": round(wait, 3)})
                    self._sleep(wait)
                    now = self._monotonic()
            self._last_dispatch = now
            self.dispatch_count += 1

    def _request_station(self, station_id: str, *, force_bust: bool) -> StationRecord:
        url = f"{self.base_url}/{quote(station_id, safe='')}"
        return self._request(url, station_id=station_id, force_bust=force_bust, parse=StationRecord.from_api)

    def _request(
        self,
        url: str,
        *,
        station_id: str | None,
        force_bust: bool,
        parse: Callable[[Any], Any],
    ) -> Any:
        """GET `url` with up to `max_retries` extra attempts.

        429 raises RateLimitedError immediately. Transport failures, other
        non-200 statuses and undecodable bodies are retried, and the last
        failure is raised once attempts run out.
        """
        headers: Dict[str, str] = {}
        params: Dict[str, Any] = {}
        if force_bust:
            params[CACHE_BUST_PARAM] = int(self._wall_clock())
            headers.update(NO_CACHE_HEADERS)

        last_error: FetchError | None = None
        for attempt in range(1, self.max_retries + 2):
            self._wait_for_slot()
            try:
                resp = self.session.get(url, params=params or None, headers=headers, timeout=self.timeout)
            except requests.RequestException as exc:
                last_error = NetworkError(f"Transport error: {exc}", station_id=station_id)
                logger.warning(
                    "Station request failed",
                    extra={"station_id": station_id, "attempt": attempt, "error": str(exc)},
                )
                continue

            if resp.status_code == 429:
                retry_after = _retry_after(resp.headers.get("Retry-After"))
                logger.warning(
                    "Rate limited by station API",
                    extra={"station_id": station_id, "retry_after": retry_after},
                )
                raise RateLimitedError("HTTP 429 from station API", station_id=station_id, retry_after=retry_after)

            if resp.status_code != 200:
                last_error = NetworkError(
                    f"HTTP {resp.status_code} from station API",
                    station_id=station_id,
                    status_code=resp.status_code,
                )
                logger.warning(
                    "Unexpected status from station API",
                    extra={"station_id": station_id, "attempt": attempt, "status_code": resp.status_code},
                )
                continue

            try:
                return parse(resp.json())
            except DecodeError as exc:
                last_error = exc if exc.station_id else DecodeError(str(exc), station_id=station_id)
            except ValueError as exc:
                last_error = DecodeError(f"Response is not JSON: {exc}", station_id=station_id)
            logger.warning(
                "Could not decode station response",
                extra={"station_id": station_id, "attempt": attempt},
            )

        raise last_error


def _expect_list(payload: Any) -> list:
    if not isinstance(payload, list):
        raise DecodeError(f"Expected a list of stations, got {type(payload).__name__}")
    return payload
