"""Custom URL scheme routes into the app.

    myborisbikes://dock/{stationId}                 open a station
    myborisbikes://configure-widget/{slot}          choose a station for a widget
    myborisbikes://selectdock?widget={slot}         same, older widget builds
    myborisbikes://custom-dock/{slot}/{stationId}   open a widget's station

Anything else is ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import parse_qs, quote, unquote, urlparse

from docksync.shared_store.store import SharedStateStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="deep_links")

DEFAULT_SCHEME = "myborisbikes"
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_.:\-]+$")


class DeepLinkKind(str, Enum):
    OPEN_STATION = "open_station"
    SELECT_STATION = "select_station"
    OPEN_BINDING = "open_binding"


@dataclass(frozen=True)
class DeepLink:
    kind: DeepLinkKind
    station_id: Optional[str] = None
    slot: Optional[str] = None


def _token(value: str) -> Optional[str]:
    value = unquote(value).strip()
    return value if _TOKEN_RE.match(value) else None


def parse_deep_link(url: str, scheme: str = DEFAULT_SCHEME) -> Optional[DeepLink]:
    """Parse a deep link; malformed or unknown links return None."""
    try:
        parsed = urlparse(url)
    except (TypeError, ValueError):
        return None
    if parsed.scheme.lower() != scheme.lower():
        return None

    route = parsed.netloc.lower()
    parts = [p for p in parsed.path.split("/") if p]

    if route == "dock" and len(parts) == 1:
        station_id = _token(parts[0])
        return DeepLink(DeepLinkKind.OPEN_STATION, station_id=station_id) if station_id else None

    if route == "configure-widget" and len(parts) == 1:
        slot = _token(parts[0])
        return DeepLink(DeepLinkKind.SELECT_STATION, slot=slot) if slot else None

    if route == "selectdock" and not parts:
        values = parse_qs(parsed.query).get("widget") or []
        slot = _token(values[0]) if values else None
        return DeepLink(DeepLinkKind.SELECT_STATION, slot=slot) if slot else None

    if route == "custom-dock" and len(parts) == 2:
        slot, station_id = _token(parts[0]), _token(parts[1])
        if slot and station_id:
            return DeepLink(DeepLinkKind.OPEN_BINDING, station_id=station_id, slot=slot)
    return None


def station_link(station_id: str, scheme: str = DEFAULT_SCHEME) -> str:
    return f"{scheme}://dock/{quote(station_id, safe='')}"


def configure_link(slot: str, scheme: str = DEFAULT_SCHEME) -> str:
    return f"{scheme}://configure-widget/{quote(slot, safe='')}"


def binding_link(slot: str, station_id: str, scheme: str = DEFAULT_SCHEME) -> str:
    return f"{scheme}://custom-dock/{quote(slot, safe='')}/{quote(station_id, safe='')}"


class DeepLinkRouter:
    """Applies the side effects of a deep link."""

    def __init__(
        self,
        store: SharedStateStore,
        *,
        refresh_station: Callable[[str], object] | None = None,
        scheme: str = DEFAULT_SCHEME,
    ) -> None:
        self.store = store
        self._refresh_station = refresh_station
        self.scheme = scheme
        self.selecting_for_slot: Optional[str] = None
        self.selected_station_id: Optional[str] = None

    def handle(self, url: str) -> Optional[DeepLink]:
        link = parse_deep_link(url, self.scheme)
        if link is None:
            logger.info("Ignoring unrecognised deep link", extra={"url": url})
            return None

        if link.kind is DeepLinkKind.SELECT_STATION:
            self.store.set_pending_configuration(link.slot)
            self.selecting_for_slot = link.slot
        else:
            self.selected_station_id = link.station_id
            if self._refresh_station is not None:
                self._refresh_station(link.station_id)
        logger.info("Routed deep link", extra={"kind": link.kind.value, "slot": link.slot, "station_id": link.station_id})
        return link

    def bind_pending(self, station_id: str, station_name: str | None = None) -> Optional[str]:
        """Finish a pending widget configuration with `station_id`. Returns the slot, if any."""
        slot = self.store.pending_configuration()
        if slot is None:
            return None
        self.store.set_widget_binding(slot, station_id, station_name)
        self.store.clear_pending_configuration()
        self.selecting_for_slot = None
        logger.info("Bound widget to station", extra={"slot": slot, "station_id": station_id})
        return slot
