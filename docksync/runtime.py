"""Wiring for one process: store, fetcher, favourites, companion, consumers and loops."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from docksync import config
from docksync.companion import CompanionTransport, LoopbackTransport, PhoneCompanion, WatchCompanion
from docksync.consumers import ClosestStationWidget, ConfigurableDockWidget, ForegroundConsumer, InteractiveDockWidget
from docksync.consumers.widgets import INTERACTIVE_SLOTS
from docksync.deep_links import DeepLinkRouter
from docksync.favorites import FavoritesRegistry, Location
from docksync.fetcher import RateLimitedFetcher
from docksync.orchestrator import ConsumerKind
from docksync.scheduler import ConsumerLoop, FixedIntervalLoop
from docksync.shared_store import SharedStateStore, build_store
from docksync.stations import StationService
from docksync.ttl_cache import TTLCache
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="runtime")


@dataclass
class PhoneRuntime:
    settings: config.Settings
    store: SharedStateStore
    fetcher: RateLimitedFetcher
    stations: StationService
    companion: PhoneCompanion
    favorites: FavoritesRegistry
    foreground: ForegroundConsumer
    deep_links: DeepLinkRouter
    closest_widget: ClosestStationWidget
    interactive_widgets: Dict[str, InteractiveDockWidget]
    clock: Callable[[], float] = time.time
    configurable_widgets: Dict[str, ConfigurableDockWidget] = field(default_factory=dict)
    loops: List[ConsumerLoop] = field(default_factory=list)

    def configurable_widget(self, station_id: Optional[str]) -> ConfigurableDockWidget:
        """Widget showing one configured station; its station stays in the shared list."""
        key = station_id or ""
        widget = self.configurable_widgets.get(key)
        if widget is None:
            widget = ConfigurableDockWidget(self.store, station_id, clock=self.clock,
                                            scheme=self.settings.deep_link_scheme)
            if station_id:
                self.foreground.pin(station_id)
            self.configurable_widgets[key] = widget
        return widget

    def start(self) -> None:
        if not self.loops:
            self.loops = [
                ConsumerLoop("phone-foreground", self.foreground.tick),
                FixedIntervalLoop(
                    "phone-mailbox",
                    self.settings.mailbox_poll_interval_seconds,
                    self.foreground.drain_mailbox,
                    initial_delay=self.settings.mailbox_poll_interval_seconds,
                ),
            ]
        for loop in self.loops:
            loop.start()

    def stop(self) -> None:
        for loop in self.loops:
            loop.stop()
        self.fetcher.close()


@dataclass
class WatchRuntime:
    settings: config.Settings
    store: SharedStateStore
    fetcher: RateLimitedFetcher
    stations: StationService
    companion: WatchCompanion
    favorites: FavoritesRegistry
    foreground: ForegroundConsumer
    loops: List[ConsumerLoop] = field(default_factory=list)

    def on_favorites_synced(self, entries) -> None:
        """Reload the mirror and fetch anything the watch has no data for yet."""
        before = self.favorites.ids()
        self.favorites.reload()
        if self.favorites.ids() != before:
            self.foreground.refresh()

    def start(self) -> None:
        if not self.loops:
            self.loops = [
                ConsumerLoop("watch-companion", self.companion.step),
                ConsumerLoop("watch-foreground", self.foreground.tick),
                FixedIntervalLoop(
                    "watch-mailbox",
                    self.settings.mailbox_poll_interval_seconds,
                    self.foreground.drain_mailbox,
                    initial_delay=self.settings.mailbox_poll_interval_seconds,
                ),
            ]
        for loop in self.loops:
            loop.start()

    def stop(self) -> None:
        for loop in self.loops:
            loop.stop()
        self.fetcher.close()


def _stations(settings: config.Settings, fetcher: RateLimitedFetcher | None, clock) -> tuple:
    fetcher = fetcher or RateLimitedFetcher(settings=settings)
    cache = TTLCache(ttl_seconds=settings.cache_ttl_seconds, clock=clock)
    return fetcher, StationService(fetcher, cache, clock=clock)


def build_phone_runtime(
    settings: config.Settings | None = None,
    *,
    store: SharedStateStore | None = None,
    fetcher: RateLimitedFetcher | None = None,
    transport: CompanionTransport | None = None,
    clock: Callable[[], float] = time.time,
    location_provider: Callable[[], Optional[Location]] | None = None,
) -> PhoneRuntime:
    settings = settings or config.settings
    store = store or build_store(settings)
    fetcher, stations = _stations(settings, fetcher, clock)
    # unpaired loopback: pushes are skipped until a real watch transport is supplied
    transport = transport or LoopbackTransport("phone")

    favorites_holder: Dict[str, FavoritesRegistry] = {}
    companion = PhoneCompanion(transport, lambda: favorites_holder["registry"].entries(), clock=clock)
    favorites = FavoritesRegistry(store, companion=companion)
    favorites_holder["registry"] = favorites

    foreground = ForegroundConsumer(
        stations,
        store,
        favorites,
        consumer_id="phone",
        kind=ConsumerKind.FOREGROUND,
        settings=settings,
        clock=clock,
        location_provider=location_provider,
    )
    router = DeepLinkRouter(store, refresh_station=foreground.refresh_station, scheme=settings.deep_link_scheme)
    logger.info("Built phone runtime", extra={"store_backend": settings.store_backend})
    return PhoneRuntime(
        settings=settings,
        store=store,
        fetcher=fetcher,
        stations=stations,
        companion=companion,
        favorites=favorites,
        foreground=foreground,
        deep_links=router,
        closest_widget=ClosestStationWidget(store, clock=clock, scheme=settings.deep_link_scheme),
        interactive_widgets={
            slot: InteractiveDockWidget(store, slot, clock=clock, scheme=settings.deep_link_scheme)
            for slot in INTERACTIVE_SLOTS
        },
        clock=clock,
    )


def build_watch_runtime(
    transport: CompanionTransport,
    settings: config.Settings | None = None,
    *,
    store: SharedStateStore | None = None,
    fetcher: RateLimitedFetcher | None = None,
    clock: Callable[[], float] = time.time,
    location_provider: Callable[[], Optional[Location]] | None = None,
) -> WatchRuntime:
    settings = settings or config.settings
    store = store or build_store(settings)
    fetcher, stations = _stations(settings, fetcher, clock)
    companion = WatchCompanion(transport, store, settings=settings, clock=clock)
    favorites = FavoritesRegistry(store, read_only=True)
    foreground = ForegroundConsumer(
        stations,
        store,
        favorites,
        consumer_id="watch",
        kind=ConsumerKind.FOREGROUND,
        settings=settings,
        clock=clock,
        location_provider=location_provider,
    )
    runtime = WatchRuntime(
        settings=settings,
        store=store,
        fetcher=fetcher,
        stations=stations,
        companion=companion,
        favorites=favorites,
        foreground=foreground,
    )
    companion.subscribe(runtime.on_favorites_synced)
    logger.info("Built watch runtime", extra={"store_backend": settings.store_backend})
    return runtime
