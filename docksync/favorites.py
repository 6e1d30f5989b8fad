"""Ordered favourites list, persisted in the shared store.

The phone owns the registry. The watch builds a read-only registry over its
own store, which `WatchCompanion` keeps in sync.
"""

from __future__ import annotations

import threading
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from docksync.companion import PhoneCompanion
from docksync.models import FavoriteEntry, SortMode, StationRecord
from docksync.shared_store.store import SharedStateStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="favorites")

Location = Tuple[float, float]


def renumber(entries: Iterable[FavoriteEntry]) -> List[FavoriteEntry]:
    """Return entries with dense, zero-based sort_order in their current order."""
    return [
        e if e.sort_order == i else e.model_copy(update={"sort_order": i})
        for i, e in enumerate(entries)
    ]


class FavoritesRegistry:
    """De-duplicated favourites with a manual display order."""

    def __init__(
        self,
        store: SharedStateStore,
        *,
        companion: PhoneCompanion | None = None,
        read_only: bool = False,
    ) -> None:
        self.store = store
        self.companion = companion
        self.read_only = read_only
        self._lock = threading.RLock()
        self._listeners: List[Callable[[List[FavoriteEntry]], None]] = []
        self._entries: List[FavoriteEntry] = renumber(store.read_favorites())

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def entries(self) -> List[FavoriteEntry]:
        with self._lock:
            return list(self._entries)

    def ids(self) -> List[str]:
        with self._lock:
            return [e.id for e in self._entries]

    def is_favorite(self, station_id: str) -> bool:
        with self._lock:
            return any(e.id == station_id for e in self._entries)

    def reload(self) -> List[FavoriteEntry]:
        """Re-read the store (the watch mirror calls this after a sync)."""
        with self._lock:
            self._entries = renumber(self.store.read_favorites())
            entries = list(self._entries)
        self._notify(entries)
        return entries

    @property
    def sort_mode(self) -> SortMode:
        return self.store.read_sort_mode()

    @sort_mode.setter
    def sort_mode(self, mode: SortMode) -> None:
        self.store.write_sort_mode(SortMode(mode))

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    def _check_writable(self) -> None:
        if self.read_only:
            raise PermissionError("Favourites are read-only in this process")

    def add(self, station_id: str, name: str) -> bool:
        """Append a favourite. Returns False if it is already present."""
        self._check_writable()
        with self._lock:
            if any(e.id == station_id for e in self._entries):
                return False
            self._entries = renumber(
                [*self._entries, FavoriteEntry(id=station_id, name=name, sort_order=len(self._entries))]
            )
        logger.info("Added favourite", extra={"station_id": station_id})
        self._persist()
        return True

    def add_station(self, record: StationRecord) -> bool:
        return self.add(record.id, record.name)

    def remove(self, station_id: str) -> bool:
        self._check_writable()
        with self._lock:
            remaining = [e for e in self._entries if e.id != station_id]
            if len(remaining) == len(self._entries):
                return False
            self._entries = renumber(remaining)
        logger.info("Removed favourite", extra={"station_id": station_id})
        self._persist()
        return True

    def toggle(self, record: StationRecord) -> bool:
        """Add or remove `record`; returns True when it is now a favourite."""
        if self.is_favorite(record.id):
            self.remove(record.id)
            return False
        self.add_station(record)
        return True

    def move(self, from_indices: Iterable[int], to_index: int) -> None:
        """Move the entries at `from_indices` so they land before the entry currently at `to_index`."""
        self._check_writable()
        with self._lock:
            items = list(self._entries)
            sources = sorted(set(from_indices))
            if any(i < 0 or i >= len(items) for i in sources) or not 0 <= to_index <= len(items):
                raise IndexError(f"Invalid move {sources} -> {to_index} for {len(items)} favourites")
            moving = [items[i] for i in sources]
            rest = [e for i, e in enumerate(items) if i not in sources]
            insert_at = to_index - sum(1 for i in sources if i < to_index)
            rest[insert_at:insert_at] = moving
            self._entries = renumber(rest)
        self._persist()

    def reorder(self, station_ids: Sequence[str]) -> None:
        """Apply a full manual order. Ids not listed keep their relative order at the end."""
        self._check_writable()
        with self._lock:
            by_id = {e.id: e for e in self._entries}
            ordered = [by_id[sid] for sid in dict.fromkeys(station_ids) if sid in by_id]
            seen = {e.id for e in ordered}
            ordered.extend(e for e in self._entries if e.id not in seen)
            self._entries = renumber(ordered)
        self._persist()

    def _persist(self) -> None:
        entries = self.entries()
        if not self.store.write_favorites(entries):
            logger.error("Favourites were not persisted", extra={"count": len(entries)})
        if self.companion is not None:
            self.companion.push_favorites(entries)
        self._notify(entries)

    def subscribe(self, callback: Callable[[List[FavoriteEntry]], None]) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    def _notify(self, entries: List[FavoriteEntry]) -> None:
        for listener in list(self._listeners):
            try:
                listener(entries)
            except Exception as exc:
                logger.warning("Favourites listener raised: %s", exc)


# ---------------------------------------------------------------------------
# ordering helpers
# ---------------------------------------------------------------------------


def sort_stations(
    records: Sequence[StationRecord],
    mode: SortMode,
    favorites: Sequence[FavoriteEntry] = (),
    location: Optional[Location] = None,
) -> List[StationRecord]:
    """Order station records for display.

    Distance ordering needs a location and falls back to the manual order
    without one.
    """
    mode = SortMode(mode)
    if mode is SortMode.DISTANCE and location is not None:
        lat, lon = location
        return sorted(records, key=lambda r: r.distance_from(lat, lon))
    if mode is SortMode.ALPHABETICAL:
        return sorted(records, key=lambda r: r.name.lower())
    order = {f.id: f.sort_order for f in favorites}
    return sorted(records, key=lambda r: order.get(r.id, len(order)))


def closest_station(
    records: Sequence[StationRecord],
    favorites: Sequence[FavoriteEntry] = (),
    location: Optional[Location] = None,
) -> Optional[StationRecord]:
    """Nearest station to `location`, else the first favourite that has data."""
    if not records:
        return None
    if location is not None:
        lat, lon = location
        return min(records, key=lambda r: r.distance_from(lat, lon))
    return sort_stations(records, SortMode.MANUAL, favorites)[0]
