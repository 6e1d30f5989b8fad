"""HTTP API for the phone process: favourites, snapshot, refreshes, companion and deep links."""

import hmac
from typing import Any, Optional

import redis
from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from .config import settings
from .consumers.widgets import INTERACTIVE_SLOTS, Timeline
from .errors import FetchError, RateLimitedError
from .models import FavoriteEntry, RefreshRequest, SortMode
from .runtime import build_phone_runtime
from utils.logging_utils import get_tagged_logger, mask_url

logger = get_tagged_logger(__name__, tag="docksync/api")

_redis_client = None
if settings.api_key_redis_url:
    try:
        _redis_client = redis.Redis.from_url(settings.api_key_redis_url)
        logger.info("API key checks will use Redis backend", extra={"redis_url": mask_url(settings.api_key_redis_url)})
    except Exception as exc:  # pragma: no cover - safety net
        logger.warning("Failed to connect to Redis for API key checks; falling back to static key",
                       extra={"error": str(exc)})


def require_api_key(x_api_key: str | None = Header(default=None)):
    """
    Validate X-API-Key against Redis (if configured) or the static api_key setting.
    With neither configured every request is allowed.
    """
    if not settings.api_key and not _redis_client:
        return

    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    if _redis_client:
        try:
            if _redis_client.sismember(settings.api_key_redis_set, x_api_key):
                return
        except Exception as e:  # pragma: no cover - defensive
            logger.warning("Redis API key lookup error; falling back to static key",
                           extra={"error": str(e)})

    if settings.api_key and hmac.compare_digest(str(x_api_key), str(settings.api_key)):
        return

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


router = APIRouter(dependencies=[Depends(require_api_key)])
RUNTIME = build_phone_runtime(settings)


class FavoriteRequest(BaseModel):
    """Station to add to favourites."""
    station_id: str = Field(min_length=1)
    name: str


class MoveRequest(BaseModel):
    from_indices: list[int]
    to_index: int


class SortModeRequest(BaseModel):
    mode: SortMode


class FavoritesResponse(BaseModel):
    favorites: list[FavoriteEntry]
    sort_mode: SortMode


class RefreshBody(BaseModel):
    force_bust: bool = False


class RefreshResponse(BaseModel):
    stations: list[dict[str, Any]]
    using_fallback: bool
    error_visible: bool


class RefreshRequestBody(BaseModel):
    """Mailbox post on behalf of a consumer that cannot fetch itself."""
    reason: str
    source: str
    station_id: Optional[str] = None
    widget_id: Optional[str] = None


class DeepLinkBody(BaseModel):
    url: str


class BindBody(BaseModel):
    station_id: str
    station_name: Optional[str] = None


def _favorites_response() -> FavoritesResponse:
    return FavoritesResponse(favorites=RUNTIME.favorites.entries(), sort_mode=RUNTIME.favorites.sort_mode)


def _timeline_payload(timeline: Timeline) -> dict:
    return {
        "reload_at": timeline.reload_at,
        "entry_interval": timeline.decision.entry_interval,
        "policy_delay": timeline.decision.policy_delay,
        "refresh_requested": timeline.decision.requests_refresh,
        "entries": [
            {
                "date": e.date,
                "status": e.status.value,
                "station": e.station.display_counts() if e.station else None,
                "station_id": e.station_id,
                "station_name": e.station_name,
                "slot": e.slot,
                "link": e.link,
            }
            for e in timeline.entries
        ],
    }


@router.get("/favorites", response_model=FavoritesResponse)
def list_favorites():
    """Return favourites in manual order."""
    return _favorites_response()


@router.post("/favorites", response_model=FavoritesResponse, status_code=status.HTTP_201_CREATED)
def add_favorite(req: FavoriteRequest):
    """Append a favourite; duplicates are ignored."""
    RUNTIME.favorites.add(req.station_id, req.name)
    return _favorites_response()


@router.delete("/favorites/{station_id}", response_model=FavoritesResponse)
def remove_favorite(station_id: str):
    """Remove a favourite."""
    if not RUNTIME.favorites.remove(station_id):
        raise HTTPException(status_code=404, detail="Unknown favourite")
    return _favorites_response()


@router.post("/favorites/move", response_model=FavoritesResponse)
def move_favorites(req: MoveRequest):
    """Manual reorder."""
    try:
        RUNTIME.favorites.move(req.from_indices, req.to_index)
    except IndexError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _favorites_response()


@router.put("/favorites/sort-mode", response_model=FavoritesResponse)
def set_sort_mode(req: SortModeRequest):
    RUNTIME.favorites.sort_mode = req.mode
    return _favorites_response()


@router.get("/snapshot")
def get_snapshot():
    """Shared snapshot with derived counts for every station."""
    snapshot = RUNTIME.store.read_snapshot()
    data = snapshot.model_dump()
    data["stations"] = [r.display_counts() for r in snapshot.stations]
    if snapshot.primary is not None:
        data["primary"] = snapshot.primary.display_counts()
    return data


@router.post("/refresh", response_model=RefreshResponse)
def refresh(body: RefreshBody | None = None):
    """Run a foreground refresh now."""
    body = body or RefreshBody()
    stations = RUNTIME.foreground.refresh(force_bust=body.force_bust)
    return RefreshResponse(
        stations=[r.display_counts() for r in stations],
        using_fallback=RUNTIME.foreground.using_fallback,
        error_visible=RUNTIME.foreground.error_visible,
    )


@router.post("/refresh-requests", response_model=RefreshRequest, status_code=status.HTTP_202_ACCEPTED)
def post_refresh_request(body: RefreshRequestBody):
    """Leave a refresh request in the shared mailbox."""
    request = RUNTIME.store.request_refresh(
        body.reason, body.source, station_id=body.station_id, widget_id=body.widget_id
    )
    if request is None:
        raise HTTPException(status_code=503, detail="Refresh request could not be stored")
    return request


@router.post("/companion/message")
def companion_message(message: dict[str, Any]):
    """Answer a companion request (the watch's favourites pull)."""
    return RUNTIME.companion.handle_message(message)


@router.post("/deep-links")
def open_deep_link(body: DeepLinkBody):
    """Route a deep link. Unknown links are rejected without side effects."""
    link = RUNTIME.deep_links.handle(body.url)
    if link is None:
        raise HTTPException(status_code=400, detail="Unrecognised deep link")
    return {"kind": link.kind.value, "station_id": link.station_id, "slot": link.slot}


@router.post("/deep-links/bind")
def bind_pending_widget(body: BindBody):
    """Finish a widget configuration started by a configure-widget link."""
    slot = RUNTIME.deep_links.bind_pending(body.station_id, body.station_name)
    if slot is None:
        raise HTTPException(status_code=409, detail="No widget is waiting for a station")
    return {"slot": slot, "station_id": body.station_id}


@router.get("/widgets/closest/timeline")
def closest_timeline():
    return _timeline_payload(RUNTIME.closest_widget.timeline())


@router.get("/widgets/interactive/{slot}/timeline")
def interactive_timeline(slot: str):
    if slot not in INTERACTIVE_SLOTS:
        raise HTTPException(status_code=404, detail="Unknown widget slot")
    return _timeline_payload(RUNTIME.interactive_widgets[slot].timeline())


@router.get("/widgets/dock/timeline")
def unconfigured_dock_timeline():
    """Placeholder timeline plus the favourites offered as configuration choices."""
    widget = RUNTIME.configurable_widget(None)
    payload = _timeline_payload(widget.timeline())
    payload["recommendations"] = [f.model_dump(by_alias=True) for f in widget.recommendations()]
    return payload


@router.get("/widgets/dock/{station_id}/timeline")
def dock_timeline(station_id: str):
    return _timeline_payload(RUNTIME.configurable_widget(station_id).timeline())


@router.get("/stations")
def list_stations(force_bust: bool = False):
    """Whole station collection, for picking favourites and widget stations."""
    try:
        records = RUNTIME.stations.all_stations(force_bust=force_bust)
    except RateLimitedError as exc:
        headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after is not None else None
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc), headers=headers)
    except FetchError as exc:
        logger.warning("Station collection fetch failed", extra={"error": str(exc)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return {"stations": [r.display_counts() for r in records]}
