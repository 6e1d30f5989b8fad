"""Widget timeline providers.

Widgets run in a constrained process: they read the shared store, never
fetch, and post refresh requests to the mailbox when their policy asks for
fresher data.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from docksync.deep_links import DEFAULT_SCHEME, binding_link, configure_link, station_link
from docksync.models import FavoriteEntry, SharedSnapshot, StationRecord
from docksync.orchestrator import (
    ConsumerKind,
    ConsumerState,
    RefreshDecision,
    RefreshOrchestrator,
    timeline_dates,
)
from docksync.shared_store.store import SharedStateStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="consumers/widgets")

INTERACTIVE_SLOTS = tuple(str(i) for i in range(1, 7))


class EntryStatus(str, Enum):
    LIVE = "live"
    FALLBACK = "fallback"  # last-known-good data
    LOADING = "loading"  # configured, waiting for data
    PLACEHOLDER = "placeholder"  # not configured yet
    ERROR = "error"


@dataclass(frozen=True)
class WidgetEntry:
    date: float
    status: EntryStatus
    station: Optional[StationRecord] = None
    station_id: Optional[str] = None
    station_name: Optional[str] = None
    slot: Optional[str] = None
    link: Optional[str] = None

    @property
    def show_error(self) -> bool:
        return self.status is EntryStatus.ERROR


@dataclass(frozen=True)
class Timeline:
    entries: List[WidgetEntry]
    reload_at: float
    decision: RefreshDecision


@dataclass
class _Resolved:
    station: Optional[StationRecord] = None
    status: EntryStatus = EntryStatus.LOADING
    data_age: Optional[float] = None
    station_name: Optional[str] = None


def _zero_counts(entry: FavoriteEntry) -> StationRecord:
    return StationRecord(id=entry.id, name=entry.name, latitude=0.0, longitude=0.0)


class _WidgetProvider:
    kind: ConsumerKind

    def __init__(
        self,
        store: SharedStateStore,
        consumer_id: str,
        clock: Callable[[], float] = time.time,
        scheme: str = DEFAULT_SCHEME,
    ) -> None:
        self.store = store
        self._clock = clock
        self.scheme = scheme
        self.orchestrator = RefreshOrchestrator(store, consumer_id, self.kind, clock)

    def _resolve_station(self, snapshot: SharedSnapshot, station_id: str, now: float) -> _Resolved:
        live = snapshot.station(station_id)
        if live is not None:
            return _Resolved(live, EntryStatus.LIVE, self.orchestrator.data_age(station_id), live.name)
        fallback = snapshot.fallback_station(station_id, now, self.store.last_known_good_max_age)
        if fallback is not None:
            return _Resolved(fallback, EntryStatus.FALLBACK, self.orchestrator.data_age(station_id), fallback.name)
        return _Resolved(None, EntryStatus.LOADING, self.orchestrator.data_age(station_id))

    def _timeline(self, now: float, decision: RefreshDecision, **entry_fields) -> Timeline:
        entries = [WidgetEntry(date=d, **entry_fields) for d in timeline_dates(now, decision)]
        logger.debug(
            "Built widget timeline",
            extra={"consumer": self.orchestrator.consumer_id, "entries": len(entries), "status": entry_fields.get("status")},
        )
        return Timeline(entries=entries, reload_at=now + decision.policy_delay, decision=decision)


class ClosestStationWidget(_WidgetProvider):
    """Shows the station the foreground app last picked as closest."""

    kind = ConsumerKind.CLOSEST_WIDGET

    def __init__(self, store: SharedStateStore, clock: Callable[[], float] = time.time, scheme: str = DEFAULT_SCHEME) -> None:
        super().__init__(store, "widget:closest", clock, scheme)

    def timeline(self, now: float | None = None) -> Timeline:
        now = self._clock() if now is None else now
        snapshot = self.store.read_snapshot()
        station = snapshot.primary
        status = EntryStatus.LIVE
        age_from = snapshot.primary_timestamp
        if station is None and snapshot.last_known_good_timestamp is not None and \
                now - snapshot.last_known_good_timestamp < self.store.last_known_good_max_age:
            station = snapshot.last_known_good
            status = EntryStatus.FALLBACK
            age_from = snapshot.last_known_good_timestamp
        has_data = station is not None
        if station is None:
            favorites = self.store.read_favorites()
            if favorites:
                # a zero-count card for the first favourite beats an error
                station = _zero_counts(favorites[0])
                status = EntryStatus.LOADING
            else:
                status = EntryStatus.PLACEHOLDER

        age = None if age_from is None else max(0.0, now - age_from)
        decision = self.orchestrator.evaluate(
            ConsumerState(data_age=age, has_data=has_data),
            station_id=station.id if station else None,
            widget_id="closest",
        )
        return self._timeline(
            now,
            decision,
            status=status,
            station=station,
            station_id=station.id if station else None,
            station_name=station.name if station else None,
            link=station_link(station.id, self.scheme) if station else None,
        )


class ConfigurableDockWidget(_WidgetProvider):
    """Shows one station picked in the widget's configuration."""

    kind = ConsumerKind.CONFIGURABLE_WIDGET

    def __init__(
        self,
        store: SharedStateStore,
        station_id: str | None,
        clock: Callable[[], float] = time.time,
        scheme: str = DEFAULT_SCHEME,
    ) -> None:
        super().__init__(store, f"widget:dock:{station_id or 'unconfigured'}", clock, scheme)
        self.station_id = station_id

    def recommendations(self, limit: int = 4) -> List[FavoriteEntry]:
        """Favourites offered as configuration choices."""
        return self.store.read_favorites()[:limit]

    def timeline(self, now: float | None = None) -> Timeline:
        now = self._clock() if now is None else now
        if not self.station_id:
            decision = self.orchestrator.evaluate(ConsumerState(data_age=None, has_data=False, is_placeholder=True))
            return self._timeline(now, decision, status=EntryStatus.PLACEHOLDER)

        resolved = self._resolve_station(self.store.read_snapshot(), self.station_id, now)
        if resolved.station is None:
            known = {f.id: f.name for f in self.store.read_favorites()}
            resolved.station_name = known.get(self.station_id)
            if resolved.station_name is None:
                resolved.status = EntryStatus.ERROR

        decision = self.orchestrator.evaluate(
            ConsumerState(data_age=resolved.data_age, has_data=resolved.station is not None),
            station_id=self.station_id,
            widget_id=self.orchestrator.consumer_id,
        )
        return self._timeline(
            now,
            decision,
            status=resolved.status,
            station=resolved.station,
            station_id=self.station_id,
            station_name=resolved.station_name,
            link=station_link(self.station_id, self.scheme),
        )


class InteractiveDockWidget(_WidgetProvider):
    """One of six widget slots bound to a station through a deep link."""

    kind = ConsumerKind.INTERACTIVE_WIDGET

    def __init__(
        self,
        store: SharedStateStore,
        slot: str,
        clock: Callable[[], float] = time.time,
        scheme: str = DEFAULT_SCHEME,
    ) -> None:
        slot = str(slot)
        if slot not in INTERACTIVE_SLOTS:
            raise ValueError(f"Interactive widget slot must be one of {INTERACTIVE_SLOTS}, got {slot!r}")
        super().__init__(store, f"widget:custom:{slot}", clock, scheme)
        self.slot = slot

    @property
    def display_name(self) -> str:
        return f"Custom Dock {self.slot}"

    def timeline(self, now: float | None = None) -> Timeline:
        now = self._clock() if now is None else now
        binding = self.store.widget_binding(self.slot)
        if binding is None:
            decision = self.orchestrator.evaluate(
                ConsumerState(data_age=None, has_data=False, is_placeholder=True),
                widget_id=self.slot,
            )
            return self._timeline(
                now,
                decision,
                status=EntryStatus.PLACEHOLDER,
                slot=self.slot,
                station_name=self.display_name,
                link=configure_link(self.slot, self.scheme),
            )

        resolved = self._resolve_station(self.store.read_snapshot(), binding.station_id, now)
        if resolved.station is None:
            resolved.station_name = binding.station_name
            if resolved.station_name is None:
                resolved.status = EntryStatus.ERROR

        decision = self.orchestrator.evaluate(
            ConsumerState(data_age=resolved.data_age, has_data=resolved.station is not None),
            station_id=binding.station_id,
            widget_id=self.slot,
        )
        return self._timeline(
            now,
            decision,
            status=resolved.status,
            station=resolved.station,
            station_id=binding.station_id,
            station_name=resolved.station_name,
            slot=self.slot,
            link=binding_link(self.slot, binding.station_id, self.scheme),
        )
