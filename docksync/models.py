"""Station, favourite and shared-snapshot models.

Everything that crosses a process boundary (shared store blobs, companion
messages) is a pydantic model so that the store can verify a payload by
decoding it again before committing it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    TypeAdapter,
    ValidationError,
)

from docksync.errors import DecodeError

EARTH_RADIUS_M = 6_371_000.0


class StationRecord(BaseModel):
    """Point-in-time availability of one dock. Immutable; superseded, never mutated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    name: str
    latitude: float
    longitude: float
    standard_bikes: NonNegativeInt = 0
    e_bikes: NonNegativeInt = 0
    total_docks: NonNegativeInt = 0
    raw_empty_spaces: NonNegativeInt = 0
    installed: bool = True
    locked: bool = False

    @property
    def total_bikes(self) -> int:
        return self.standard_bikes + self.e_bikes

    @property
    def broken_docks(self) -> int:
        """Docks reported neither occupied nor empty."""
        return max(0, self.total_docks - (self.total_bikes + self.raw_empty_spaces))

    @property
    def available_spaces(self) -> int:
        """Free docks, self-corrected when upstream counts do not add up."""
        broken = self.broken_docks
        if self.total_bikes + self.raw_empty_spaces + broken == self.total_docks:
            return self.raw_empty_spaces
        return max(0, self.total_docks - self.total_bikes - broken)

    @property
    def has_broken_docks(self) -> bool:
        return self.broken_docks > 0

    @property
    def is_available(self) -> bool:
        return self.installed and not self.locked

    def distance_from(self, latitude: float, longitude: float) -> float:
        """Great-circle distance in metres (haversine)."""
        phi1, phi2 = math.radians(latitude), math.radians(self.latitude)
        d_phi = phi2 - phi1
        d_lambda = math.radians(self.longitude - longitude)
        a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
        return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))

    def display_counts(self) -> dict[str, Any]:
        """Stored fields plus derived counts, for API responses and widgets."""
        data = self.model_dump()
        data.update(
            total_bikes=self.total_bikes,
            broken_docks=self.broken_docks,
            available_spaces=self.available_spaces,
            is_available=self.is_available,
        )
        return data

    @classmethod
    def from_api(cls, payload: Any) -> "StationRecord":
        """Parse one station object from the remote API.

        Raises DecodeError when the payload does not have the station shape.
        """
        try:
            raw = _ApiStation.model_validate(payload)
        except ValidationError as exc:
            raise DecodeError(f"Unexpected station payload: {exc.error_count()} validation error(s)") from exc

        props = {p.key: p.value for p in raw.additional_properties}
        return cls(
            id=raw.id,
            name=raw.name,
            latitude=raw.lat,
            longitude=raw.lon,
            standard_bikes=_count(props.get("NbStandardBikes")),
            e_bikes=_count(props.get("NbEBikes")),
            total_docks=_count(props.get("NbDocks")),
            raw_empty_spaces=_count(props.get("NbEmptyDocks")),
            installed=_flag(props.get("Installed")),
            locked=_flag(props.get("Locked")),
        )


class _ApiProperty(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    value: Optional[str] = None


class _ApiStation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = Field(validation_alias=AliasChoices("commonName", "name"))
    lat: float
    lon: float
    additional_properties: List[_ApiProperty] = Field(
        default_factory=list,
        validation_alias=AliasChoices("additionalProperties", "additional_properties"),
    )


def _count(value: Optional[str]) -> int:
    try:
        return max(0, int(str(value).strip()))
    except (TypeError, ValueError):
        return 0


def _flag(value: Optional[str]) -> bool:
    return str(value).strip().lower() == "true"


class FavoriteEntry(BaseModel):
    """A pinned station. `name` is a snapshot taken at favouriting time."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = Field(
        validation_alias=AliasChoices("commonName", "name"),
        serialization_alias="commonName",
    )
    sort_order: NonNegativeInt = Field(
        default=0,
        validation_alias=AliasChoices("sortOrder", "sort_order"),
        serialization_alias="sortOrder",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


FAVORITES_ADAPTER = TypeAdapter(List[FavoriteEntry])
STATIONS_ADAPTER = TypeAdapter(List[StationRecord])


def encode_favorites(entries: Iterable[FavoriteEntry]) -> str:
    """Encode favourites in the companion wire format (JSON list)."""
    return FAVORITES_ADAPTER.dump_json(list(entries), by_alias=True).decode("utf-8")


def decode_favorites(raw: str | bytes | list) -> List[FavoriteEntry]:
    """Decode favourites from a JSON string or an already-parsed list."""
    try:
        if isinstance(raw, list):
            return FAVORITES_ADAPTER.validate_python(raw)
        return FAVORITES_ADAPTER.validate_json(raw)
    except ValidationError as exc:
        raise DecodeError(f"Malformed favourites payload: {exc.error_count()} error(s)") from exc


@dataclass(frozen=True)
class CacheEntry:
    """A StationRecord with the time its fetch was dispatched. Process-local only."""
    record: StationRecord
    fetched_at: float


class RefreshRequest(BaseModel):
    """Mailbox message asking a networking-capable consumer to fetch."""

    model_config = ConfigDict(frozen=True)

    reason: str
    timestamp: float
    source: str
    station_id: Optional[str] = None
    widget_id: Optional[str] = None


class WidgetBinding(BaseModel):
    """Station chosen for one configurable widget slot."""

    model_config = ConfigDict(frozen=True)

    slot: str
    station_id: str
    station_name: Optional[str] = None
    bound_at: float


class SharedSnapshot(BaseModel):
    """Everything a consumer needs from the shared store in one read."""

    primary: Optional[StationRecord] = None
    primary_timestamp: Optional[float] = None
    stations: List[StationRecord] = Field(default_factory=list)
    stations_timestamp: Optional[float] = None
    station_timestamps: dict[str, float] = Field(default_factory=dict)
    last_known_good: Optional[StationRecord] = None
    last_known_good_timestamp: Optional[float] = None
    last_known_good_stations: List[StationRecord] = Field(default_factory=list)
    last_known_good_stations_timestamp: Optional[float] = None
    pending_refresh_request: Optional[RefreshRequest] = None

    def station(self, station_id: str) -> Optional[StationRecord]:
        """Latest record for `station_id` from the live snapshot."""
        for record in self.stations:
            if record.id == station_id:
                return record
        if self.primary is not None and self.primary.id == station_id:
            return self.primary
        return None

    def fallback_station(self, station_id: str, now: float, max_age: float) -> Optional[StationRecord]:
        """Last-known-good record for `station_id` when it is younger than `max_age`."""
        if self.last_known_good_stations_timestamp is not None and \
                now - self.last_known_good_stations_timestamp < max_age:
            for record in self.last_known_good_stations:
                if record.id == station_id:
                    return record
        if self.last_known_good is not None and self.last_known_good.id == station_id and \
                self.last_known_good_timestamp is not None and now - self.last_known_good_timestamp < max_age:
            return self.last_known_good
        return None


class SortMode(str, Enum):
    """Display order for the favourites list."""
    DISTANCE = "distance"
    ALPHABETICAL = "alphabetical"
    MANUAL = "manual"
