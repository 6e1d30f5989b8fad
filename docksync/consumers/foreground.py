"""Foreground consumer: the view model of the phone or watch app.

It is the only kind of consumer that talks to the network. Every refresh
writes its results back to the shared store so widgets (which never fetch)
pick them up on their next timeline evaluation.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional

from docksync import config
from docksync.errors import FetchError
from docksync.favorites import FavoritesRegistry, Location, closest_station, sort_stations
from docksync.models import RefreshRequest, StationRecord
from docksync.orchestrator import ConsumerKind, ConsumerState, RefreshDecision, RefreshOrchestrator
from docksync.shared_store.store import SharedStateStore
from docksync.stations import StationService
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="consumers/foreground")


class ErrorBanner:
    """Dismissible error banner that only appears once a problem has lasted `delay` seconds."""

    def __init__(self, delay: float = 20.0, clock: Callable[[], float] = time.time) -> None:
        self.delay = delay
        self._clock = clock
        self.message: Optional[str] = None
        self._since: Optional[float] = None
        self._dismissed = False

    def report(self, message: str) -> None:
        if self._since is None:
            self._since = self._clock()
            self._dismissed = False
        self.message = message

    def clear(self) -> None:
        self.message = None
        self._since = None
        self._dismissed = False

    def dismiss(self) -> None:
        self._dismissed = True

    @property
    def visible(self) -> bool:
        if self._since is None or self._dismissed:
            return False
        return self._clock() - self._since >= self.delay


class ForegroundConsumer:
    """Refreshes favourite stations, degrades to last-known-good, services the mailbox."""

    def __init__(
        self,
        stations: StationService,
        store: SharedStateStore,
        favorites: FavoritesRegistry,
        *,
        consumer_id: str = "phone",
        kind: ConsumerKind = ConsumerKind.FOREGROUND,
        settings: config.Settings | None = None,
        clock: Callable[[], float] = time.time,
        location_provider: Callable[[], Optional[Location]] | None = None,
    ) -> None:
        settings = settings or config.settings
        self.stations_service = stations
        self.store = store
        self.favorites = favorites
        self.consumer_id = consumer_id
        self.kind = ConsumerKind(kind)
        self._clock = clock
        self._location = location_provider or (lambda: None)
        self.orchestrator = RefreshOrchestrator(store, consumer_id, kind, clock)
        self.banner = ErrorBanner(settings.error_banner_delay_seconds, clock)
        self.last_known_good_max_age = settings.last_known_good_max_age_seconds
        self.refresh_interval = settings.foreground_refresh_interval_seconds
        self.bust_every = max(1, settings.cache_bust_every)

        self.stations: List[StationRecord] = []
        self.closest: Optional[StationRecord] = None
        self.is_loading = False
        self.last_fetch_failed = False
        self.using_fallback = False
        self.last_decision: Optional[RefreshDecision] = None
        self._tick_count = 0
        self._pinned: Dict[str, None] = {}
        self._refresh_lock = threading.Lock()

    # ------------------------------------------------------------------
    # display state
    # ------------------------------------------------------------------

    def show_cached(self) -> List[StationRecord]:
        """Populate the display from the shared store without touching the network."""
        snapshot = self.store.read_snapshot()
        now = self._clock()
        display: Dict[str, StationRecord] = {}
        for sid in self.favorites.ids():
            record = snapshot.station(sid) or snapshot.fallback_station(sid, now, self.last_known_good_max_age)
            if record is not None:
                display[sid] = record
        with self._refresh_lock:
            self._set_display(display)
            return list(self.stations)

    def _set_display(self, display: Dict[str, StationRecord]) -> None:
        entries = self.favorites.entries()
        location = self._location()
        records = [display[e.id] for e in entries if e.id in display]
        self.stations = sort_stations(records, self.favorites.sort_mode, entries, location)
        self.closest = closest_station(records, entries, location)

    def pin(self, station_id: str) -> None:
        """Keep a non-favourite station (shown by a widget) in the shared station list."""
        self._pinned[station_id] = None

    def keep_ids(self) -> List[str]:
        """Favourites first, then stations bound to widget slots or pinned."""
        bound = [b.station_id for b in self.store.widget_bindings().values()]
        return list(dict.fromkeys([*self.favorites.ids(), *bound, *self._pinned]))

    @property
    def error_visible(self) -> bool:
        return self.banner.visible

    # ------------------------------------------------------------------
    # refresh
    # ------------------------------------------------------------------

    def refresh(self, force_bust: bool = False) -> List[StationRecord]:
        """Fetch favourites and write them back to the shared store.

        Stations with no data anywhere are always fetched with a cache bust.
        Failed stations fall back to last-known-good data; the error banner
        is only armed when nothing at all can be shown.
        """
        with self._refresh_lock:
            ids = self.favorites.ids()
            if not ids:
                self.store.clear_station_data(keep_ids=self.keep_ids())
                self.stations, self.closest = [], None
                self.last_fetch_failed = False
                self.using_fallback = False
                self.banner.clear()
                return []

            snapshot = self.store.read_snapshot()
            if force_bust:
                cold, warm = ids, []
            else:
                cold = [sid for sid in ids if snapshot.station(sid) is None]
                warm = [sid for sid in ids if sid not in cold]

            self.is_loading = not self.stations
            error: Optional[FetchError] = None
            records: List[StationRecord] = []
            try:
                if cold:
                    records.extend(self.stations_service.get_many(cold, force_bust=True))
                if warm:
                    records.extend(self.stations_service.get_many(warm))
            except FetchError as exc:
                error = exc
            finally:
                self.is_loading = False

            if records:
                self.store.write_stations(records, keep_ids=self.keep_ids())

            fetched = {r.id: r for r in records}
            missing = [sid for sid in ids if sid not in fetched]
            now = self._clock()
            display = dict(fetched)
            fallback_used = False
            for sid in missing:
                record = snapshot.fallback_station(sid, now, self.last_known_good_max_age)
                if record is not None:
                    display[sid] = record
                    fallback_used = True

            self._set_display(display)
            if self.closest is not None and self.closest.id in fetched:
                self.store.write_station(self.closest)

            self.last_fetch_failed = bool(missing)
            self.using_fallback = fallback_used
            if not self.stations:
                reason = type(error).__name__ if error else "no station data"
                self.banner.report(f"Unable to load stations ({reason})")
            else:
                self.banner.clear()

            logger.info(
                "Refresh complete",
                extra={
                    "consumer": self.consumer_id,
                    "requested": len(ids),
                    "fetched": len(fetched),
                    "fallback": fallback_used,
                    "force_bust": force_bust,
                },
            )
            return list(self.stations)

    def refresh_station(self, station_id: str) -> Optional[StationRecord]:
        """Force-fresh fetch of one station (deep links, widget requests).

        The record is always written to the shared station list so the widget
        that asked for it can render it; stations outside the keep set are
        pruned again by the next favourites refresh.
        """
        try:
            record = self.stations_service.get(station_id, force_bust=True)
        except FetchError as exc:
            logger.warning("Single station refresh failed", extra={"station_id": station_id, "error": str(exc)})
            return None
        with self._refresh_lock:
            self.store.write_stations([record], keep_ids=[*self.keep_ids(), station_id])
            self.stations = [record if r.id == station_id else r for r in self.stations]
            if self.closest is not None and self.closest.id == station_id:
                self.closest = record
                self.store.write_station(record)
        return record

    def drain_mailbox(self) -> Optional[RefreshRequest]:
        """Service a pending refresh request posted by another consumer."""
        request = self.store.consume_refresh_request()
        if request is None:
            return None
        logger.info(
            "Servicing refresh request",
            extra={"source": request.source, "reason": request.reason, "station_id": request.station_id},
        )
        if request.station_id and request.station_id not in self.favorites.ids():
            self.refresh_station(request.station_id)
        else:
            self.refresh(force_bust=True)
        return request

    def evaluate(self) -> RefreshDecision:
        station_id = self.closest.id if self.closest else next(iter(self.favorites.ids()), None)
        state = ConsumerState(
            data_age=self.orchestrator.data_age(station_id),
            has_data=bool(self.stations),
            has_error=self.last_fetch_failed,
        )
        self.last_decision = self.orchestrator.evaluate(state, station_id=station_id)
        return self.last_decision

    def tick(self) -> float:
        """One scheduler wake: refresh (busting every Nth tick), evaluate, return the next delay.

        The first wake shows whatever the shared store already holds before
        going to the network.
        """
        if self._tick_count == 0 and not self.stations:
            self.show_cached()
        self._tick_count += 1
        if self.drain_mailbox() is None:
            self.refresh(force_bust=self._tick_count % self.bust_every == 0)
        decision = self.evaluate()
        if self.kind is ConsumerKind.FOREGROUND:
            return min(self.refresh_interval, decision.policy_delay)
        return decision.policy_delay
