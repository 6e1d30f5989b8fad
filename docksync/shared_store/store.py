"""Typed view over the shared key/value backend.

Every process (phone, watch, widget) builds its own SharedStateStore over the
same durable backend. Writes are last-writer-wins with no cross-process
locking, so a slow writer can overwrite newer data from another process.
What each writer does guarantee is that a payload is committed only after it
has been encoded, decoded again and compared with the original value.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import TypeAdapter

from docksync.models import (
    FavoriteEntry,
    RefreshRequest,
    SharedSnapshot,
    SortMode,
    StationRecord,
    WidgetBinding,
)
from docksync.shared_store.base import KeyValueBackend
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="shared_store")

FAVORITES_KEY = "favorites"
PRIMARY_KEY = "primary_station"
PRIMARY_TS_KEY = "primary_station_timestamp"
STATIONS_KEY = "stations"
STATIONS_TS_KEY = "stations_timestamp"
LKG_KEY = "last_known_good"
LKG_TS_KEY = "last_known_good_timestamp"
LKG_STATIONS_KEY = "last_known_good_stations"
LKG_STATIONS_TS_KEY = "last_known_good_stations_timestamp"
REFRESH_REQUEST_KEY = "refresh_request"
PENDING_CONFIGURATION_KEY = "pending_widget_configuration"
SORT_MODE_KEY = "sort_mode"
STATION_TS_PREFIX = "station_timestamp:"
WIDGET_BINDING_PREFIX = "widget_binding:"

_FAVORITES = TypeAdapter(List[FavoriteEntry])
_STATION = TypeAdapter(StationRecord)
_STATIONS = TypeAdapter(List[StationRecord])
_REQUEST = TypeAdapter(RefreshRequest)
_BINDING = TypeAdapter(WidgetBinding)
_SORT_MODE = TypeAdapter(SortMode)
_TEXT = TypeAdapter(str)
_TIMESTAMP = TypeAdapter(float)

Listener = Callable[[frozenset], None]


def station_timestamp_key(station_id: str) -> str:
    return f"{STATION_TS_PREFIX}{station_id}"


def widget_binding_key(slot: str) -> str:
    return f"{WIDGET_BINDING_PREFIX}{slot}"


class JsonCodec:
    """Encode values as JSON text using pydantic adapters."""

    def encode(self, adapter: TypeAdapter, value: Any) -> str:
        return adapter.dump_json(value, by_alias=True).decode("utf-8")

    def decode(self, adapter: TypeAdapter, raw: str) -> Any:
        return adapter.validate_json(raw)


class SharedStateStore:
    """Favourites, station snapshots, last-known-good data and the refresh mailbox."""

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        clock: Callable[[], float] = time.time,
        codec: JsonCodec | None = None,
        last_known_good_max_age: float = 600.0,
        refresh_request_max_age: float = 60.0,
    ) -> None:
        self.backend = backend
        self._clock = clock
        self.codec = codec or JsonCodec()
        self.last_known_good_max_age = last_known_good_max_age
        self.refresh_request_max_age = refresh_request_max_age
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

    # ------------------------------------------------------------------
    # encoding helpers
    # ------------------------------------------------------------------

    def _verified(self, adapter: TypeAdapter, value: Any, what: str) -> Optional[str]:
        """Encode `value` and return the text only if it decodes back to an equal value."""
        try:
            encoded = self.codec.encode(adapter, value)
            decoded = self.codec.decode(adapter, encoded)
        except Exception as exc:
            logger.error("Discarding %s write: encode/decode failed: %s", what, exc)
            return None
        if decoded != value:
            logger.error("Discarding %s write: payload did not survive verification", what)
            return None
        return encoded

    def _decode(self, adapter: TypeAdapter, raw: Optional[str], what: str) -> Any:
        if raw is None:
            return None
        try:
            return self.codec.decode(adapter, raw)
        except Exception as exc:
            logger.warning("Ignoring unreadable %s in shared store: %s", what, exc)
            return None

    def _timestamp(self, raw: Optional[str]) -> Optional[float]:
        return self._decode(_TIMESTAMP, raw, "timestamp")

    def _encode_timestamp(self, value: float) -> str:
        return self.codec.encode(_TIMESTAMP, float(value))

    def _commit(self, items: Mapping[str, str], what: str) -> bool:
        try:
            self.backend.set_many(items)
        except Exception as exc:
            logger.error("Failed to commit %s to shared store: %s", what, exc)
            return False
        self._notify(frozenset(items))
        return True

    # ------------------------------------------------------------------
    # change notification (in-process)
    # ------------------------------------------------------------------

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """Call `callback(keys)` after every committed write. Returns an unsubscribe function."""
        with self._listeners_lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, keys: frozenset) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(keys)
            except Exception as exc:
                logger.warning("Store listener raised: %s", exc)

    # ------------------------------------------------------------------
    # favourites
    # ------------------------------------------------------------------

    def read_favorites(self) -> List[FavoriteEntry]:
        entries = self._decode(_FAVORITES, self.backend.get(FAVORITES_KEY), "favorites")
        return sorted(entries or [], key=lambda e: e.sort_order)

    def write_favorites(self, entries: Sequence[FavoriteEntry]) -> bool:
        blob = self._verified(_FAVORITES, list(entries), "favorites")
        if blob is None:
            return False
        return self._commit({FAVORITES_KEY: blob}, "favorites")

    # ------------------------------------------------------------------
    # station snapshots
    # ------------------------------------------------------------------

    def write_station(self, record: StationRecord) -> bool:
        """Store `record` as the primary station and as last-known-good in one commit."""
        blob = self._verified(_STATION, record, "station")
        if blob is None:
            return False
        ts = self._encode_timestamp(self._clock())
        return self._commit(
            {
                PRIMARY_KEY: blob,
                PRIMARY_TS_KEY: ts,
                LKG_KEY: blob,
                LKG_TS_KEY: ts,
                station_timestamp_key(record.id): ts,
            },
            "station",
        )

    def write_stations(self, records: Sequence[StationRecord], keep_ids: Sequence[str] | None = None) -> bool:
        """Merge `records` into the favourites station list.

        Stations not in `records` keep their previous record and timestamp.
        With `keep_ids`, the list is restricted to those ids in that order.
        """
        current = {r.id: r for r in self._decode(_STATIONS, self.backend.get(STATIONS_KEY), "stations") or []}
        order = list(current)
        for record in records:
            if record.id not in current:
                order.append(record.id)
            current[record.id] = record
        if keep_ids is not None:
            order = [sid for sid in dict.fromkeys(keep_ids) if sid in current]
        merged = [current[sid] for sid in order]

        blob = self._verified(_STATIONS, merged, "stations")
        if blob is None:
            return False
        ts = self._encode_timestamp(self._clock())
        items: Dict[str, str] = {
            STATIONS_KEY: blob,
            STATIONS_TS_KEY: ts,
            LKG_STATIONS_KEY: blob,
            LKG_STATIONS_TS_KEY: ts,
        }
        for record in records:
            items[station_timestamp_key(record.id)] = ts
        return self._commit(items, "stations")

    def prune_stations(self, keep_ids: Sequence[str]) -> bool:
        """Drop stations outside `keep_ids` from the station list, with their timestamps."""
        keep = set(keep_ids)
        current = self._decode(_STATIONS, self.backend.get(STATIONS_KEY), "stations") or []
        dropped = [station_timestamp_key(r.id) for r in current if r.id not in keep]
        if not dropped:
            return True
        blob = self._verified(_STATIONS, [r for r in current if r.id in keep], "stations")
        if blob is None or not self._commit({STATIONS_KEY: blob}, "stations"):
            return False
        self.backend.delete(*dropped)
        self._notify(frozenset(dropped))
        return True

    def clear_station_data(self, keep_ids: Sequence[str] = ()) -> None:
        """Drop live station data (e.g. when no favourites remain). Last-known-good is kept.

        Stations in `keep_ids` stay in the station list with their timestamps.
        """
        keep = set(keep_ids)
        keys = [PRIMARY_KEY, PRIMARY_TS_KEY]
        if keep:
            self.prune_stations(keep)
        else:
            keys.extend([STATIONS_KEY, STATIONS_TS_KEY])
        keys.extend(k for k in self.backend.keys(STATION_TS_PREFIX) if k[len(STATION_TS_PREFIX):] not in keep)
        self.backend.delete(*keys)
        self._notify(frozenset(keys))
        logger.info("Cleared live station data")

    def station_timestamp(self, station_id: str) -> Optional[float]:
        return self._timestamp(self.backend.get(station_timestamp_key(station_id)))

    def primary_timestamp(self) -> Optional[float]:
        return self._timestamp(self.backend.get(PRIMARY_TS_KEY))

    def last_known_good(self, max_age: float | None = None) -> Optional[StationRecord]:
        """Fallback primary station, if it is younger than `max_age`."""
        max_age = self.last_known_good_max_age if max_age is None else max_age
        raw = self.backend.get_many([LKG_KEY, LKG_TS_KEY])
        ts = self._timestamp(raw[LKG_TS_KEY])
        if ts is None or self._clock() - ts >= max_age:
            return None
        return self._decode(_STATION, raw[LKG_KEY], "last-known-good station")

    def last_known_good_stations(self, max_age: float | None = None) -> List[StationRecord]:
        max_age = self.last_known_good_max_age if max_age is None else max_age
        raw = self.backend.get_many([LKG_STATIONS_KEY, LKG_STATIONS_TS_KEY])
        ts = self._timestamp(raw[LKG_STATIONS_TS_KEY])
        if ts is None or self._clock() - ts >= max_age:
            return []
        return self._decode(_STATIONS, raw[LKG_STATIONS_KEY], "last-known-good stations") or []

    def read_snapshot(self) -> SharedSnapshot:
        """Read every snapshot key at once. Unreadable entries come back empty."""
        raw = self.backend.get_many(
            [
                PRIMARY_KEY, PRIMARY_TS_KEY, STATIONS_KEY, STATIONS_TS_KEY,
                LKG_KEY, LKG_TS_KEY, LKG_STATIONS_KEY, LKG_STATIONS_TS_KEY,
                REFRESH_REQUEST_KEY,
            ]
        )
        ts_keys = self.backend.keys(STATION_TS_PREFIX)
        station_timestamps: Dict[str, float] = {}
        for key, value in self.backend.get_many(ts_keys).items():
            ts = self._timestamp(value)
            if ts is not None:
                station_timestamps[key[len(STATION_TS_PREFIX):]] = ts

        return SharedSnapshot(
            primary=self._decode(_STATION, raw[PRIMARY_KEY], "primary station"),
            primary_timestamp=self._timestamp(raw[PRIMARY_TS_KEY]),
            stations=self._decode(_STATIONS, raw[STATIONS_KEY], "stations") or [],
            stations_timestamp=self._timestamp(raw[STATIONS_TS_KEY]),
            station_timestamps=station_timestamps,
            last_known_good=self._decode(_STATION, raw[LKG_KEY], "last-known-good station"),
            last_known_good_timestamp=self._timestamp(raw[LKG_TS_KEY]),
            last_known_good_stations=self._decode(_STATIONS, raw[LKG_STATIONS_KEY], "last-known-good stations") or [],
            last_known_good_stations_timestamp=self._timestamp(raw[LKG_STATIONS_TS_KEY]),
            pending_refresh_request=self._decode(_REQUEST, raw[REFRESH_REQUEST_KEY], "refresh request"),
        )

    # ------------------------------------------------------------------
    # refresh mailbox
    # ------------------------------------------------------------------

    def request_refresh(
        self,
        reason: str,
        source: str,
        *,
        station_id: str | None = None,
        widget_id: str | None = None,
    ) -> Optional[RefreshRequest]:
        """Post a refresh request, replacing any request already waiting."""
        request = RefreshRequest(
            reason=reason,
            timestamp=self._clock(),
            source=source,
            station_id=station_id,
            widget_id=widget_id,
        )
        blob = self._verified(_REQUEST, request, "refresh request")
        if blob is None or not self._commit({REFRESH_REQUEST_KEY: blob}, "refresh request"):
            return None
        logger.debug("Posted refresh request", extra={"reason": reason, "source": source})
        return request

    def peek_refresh_request(self) -> Optional[RefreshRequest]:
        return self._decode(_REQUEST, self.backend.get(REFRESH_REQUEST_KEY), "refresh request")

    def consume_refresh_request(self, max_age: float | None = None) -> Optional[RefreshRequest]:
        """Read and clear the mailbox.

        Requests older than `max_age` (or stamped in the future) are cleared
        and reported as None.
        """
        max_age = self.refresh_request_max_age if max_age is None else max_age
        request = self._decode(_REQUEST, self.backend.pop(REFRESH_REQUEST_KEY), "refresh request")
        if request is None:
            return None
        age = self._clock() - request.timestamp
        if age < 0 or age >= max_age:
            logger.info(
                "Dropping expired refresh request",
                extra={"source": request.source, "age_seconds": round(age, 1)},
            )
            return None
        return request

    # ------------------------------------------------------------------
    # widget configuration
    # ------------------------------------------------------------------

    def set_widget_binding(self, slot: str, station_id: str, station_name: str | None = None) -> bool:
        binding = WidgetBinding(slot=slot, station_id=station_id, station_name=station_name, bound_at=self._clock())
        blob = self._verified(_BINDING, binding, "widget binding")
        if blob is None:
            return False
        return self._commit({widget_binding_key(slot): blob}, "widget binding")

    def widget_binding(self, slot: str) -> Optional[WidgetBinding]:
        return self._decode(_BINDING, self.backend.get(widget_binding_key(slot)), "widget binding")

    def clear_widget_binding(self, slot: str) -> None:
        self.backend.delete(widget_binding_key(slot))
        self._notify(frozenset([widget_binding_key(slot)]))

    def widget_bindings(self) -> Dict[str, WidgetBinding]:
        keys = self.backend.keys(WIDGET_BINDING_PREFIX)
        out: Dict[str, WidgetBinding] = {}
        for value in self.backend.get_many(keys).values():
            binding = self._decode(_BINDING, value, "widget binding")
            if binding is not None:
                out[binding.slot] = binding
        return out

    def set_pending_configuration(self, slot: str) -> bool:
        blob = self._verified(_TEXT, slot, "pending configuration")
        if blob is None:
            return False
        return self._commit({PENDING_CONFIGURATION_KEY: blob}, "pending configuration")

    def pending_configuration(self) -> Optional[str]:
        return self._decode(_TEXT, self.backend.get(PENDING_CONFIGURATION_KEY), "pending configuration")

    def clear_pending_configuration(self) -> None:
        self.backend.delete(PENDING_CONFIGURATION_KEY)
        self._notify(frozenset([PENDING_CONFIGURATION_KEY]))

    # ------------------------------------------------------------------
    # preferences
    # ------------------------------------------------------------------

    def read_sort_mode(self) -> SortMode:
        return self._decode(_SORT_MODE, self.backend.get(SORT_MODE_KEY), "sort mode") or SortMode.DISTANCE

    def write_sort_mode(self, mode: SortMode) -> bool:
        blob = self._verified(_SORT_MODE, SortMode(mode), "sort mode")
        if blob is None:
            return False
        return self._commit({SORT_MODE_KEY: blob}, "sort mode")
