"""Phone <-> watch messaging used to replicate favourites.

The phone answers favourites requests and pushes changes opportunistically.
The watch polls on a fixed interval, syncs immediately when the phone becomes
reachable, and pauses after a run of failures. A failed sync never touches
the watch's existing favourites.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from docksync import config
from docksync.errors import (
    CompanionError,
    CompanionTimeoutError,
    CompanionUnavailableError,
    DecodeError,
)
from docksync.models import FavoriteEntry, decode_favorites, encode_favorites
from docksync.shared_store.store import SharedStateStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="companion")

Message = Dict[str, Any]
Handler = Callable[[Message], Message]

FAVORITES_REQUEST = "favorites"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_UNKNOWN = "unknown_request"
STATUS_NO_DATA = "no_data"


class CompanionTransport(Protocol):
    """Request/reply channel to the paired device."""

    def is_reachable(self) -> bool:
        """Return True when a message can be delivered right now."""

    def send_message(self, message: Message, timeout: float | None = None) -> Message:
        """Deliver `message` and return the reply.

        Raises CompanionUnavailableError or CompanionTimeoutError.
        """

    def set_handler(self, handler: Handler) -> None:
        """Register the function that answers messages from the peer."""


class LoopbackTransport(CompanionTransport):
    """In-process transport pair for the dev server and tests.

    Messages go through a JSON round trip so only wire-safe payloads work.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.peer: Optional["LoopbackTransport"] = None
        self.reachable = True
        self.drop_replies = False
        self.sent: List[Message] = []
        self._handler: Optional[Handler] = None

    @classmethod
    def pair(cls) -> tuple["LoopbackTransport", "LoopbackTransport"]:
        """Return connected (phone, watch) endpoints."""
        phone, watch = cls("phone"), cls("watch")
        phone.peer, watch.peer = watch, phone
        return phone, watch

    def set_handler(self, handler: Handler) -> None:
        self._handler = handler

    def is_reachable(self) -> bool:
        return self.peer is not None and self.reachable and self.peer.reachable

    def send_message(self, message: Message, timeout: float | None = None) -> Message:
        if not self.is_reachable():
            raise CompanionUnavailableError(f"{self.name}: peer not reachable")
        self.sent.append(message)
        handler = self.peer._handler
        if self.drop_replies or handler is None:
            raise CompanionTimeoutError(f"{self.name}: no reply within {timeout or 'transport'} timeout")
        reply = handler(json.loads(json.dumps(message)))
        return json.loads(json.dumps(reply))


class PhoneCompanion:
    """Phone side: serves favourites to the watch and pushes changes."""

    def __init__(
        self,
        transport: CompanionTransport,
        favorites_source: Callable[[], Sequence[FavoriteEntry]],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.transport = transport
        self._favorites_source = favorites_source
        self._clock = clock
        transport.set_handler(self.handle_message)

    def push_favorites(self, entries: Sequence[FavoriteEntry]) -> bool:
        """Best-effort push. Returns False (and does nothing) when the watch is unreachable."""
        if not self.transport.is_reachable():
            logger.debug("Watch not reachable; skipping favourites push")
            return False
        message = {"favorites": encode_favorites(entries), "timestamp": self._clock()}
        try:
            reply = self.transport.send_message(message)
        except CompanionError as exc:
            logger.info("Favourites push failed: %s", exc)
            return False
        ok = reply.get("status") == STATUS_SUCCESS
        if not ok:
            logger.info("Watch rejected favourites push", extra={"status": reply.get("status")})
        return ok

    def handle_message(self, message: Message) -> Message:
        if message.get("request") != FAVORITES_REQUEST:
            logger.debug("Unknown companion request", extra={"request": message.get("request")})
            return {"status": STATUS_UNKNOWN}
        try:
            entries = list(self._favorites_source())
            data = encode_favorites(entries)
        except Exception as exc:
            logger.error("Failed to encode favourites for watch: %s", exc)
            return {"status": STATUS_ERROR, "message": str(exc)}
        return {
            "favorites": data,
            "status": STATUS_SUCCESS,
            "count": len(entries),
            "timestamp": self._clock(),
        }


class WatchCompanion:
    """Watch side: keeps a read-only mirror of the phone's favourites."""

    def __init__(
        self,
        transport: CompanionTransport,
        store: SharedStateStore,
        *,
        settings: config.Settings | None = None,
        clock: Callable[[], float] = time.time,
        timeout: float | None = None,
    ) -> None:
        settings = settings or config.settings
        self.transport = transport
        self.store = store
        self._clock = clock
        self.timeout = timeout
        self.sync_interval = settings.companion_sync_interval_seconds
        self.connectivity_interval = settings.companion_connectivity_interval_seconds
        self.max_failures = settings.companion_max_failures
        self.backoff_step = settings.companion_backoff_step_seconds
        self.backoff_cap = settings.companion_backoff_cap_seconds

        self.consecutive_failures = 0
        self.cooldown_round = 0
        self.cooldown_until: float | None = None
        self.last_attempt: float | None = None
        self.last_success: float | None = None
        self._was_reachable = False
        self._lock = threading.Lock()
        self._listeners: List[Callable[[List[FavoriteEntry]], None]] = []
        transport.set_handler(self.handle_message)

    # ------------------------------------------------------------------
    # pull
    # ------------------------------------------------------------------

    def request_favorites(self) -> List[FavoriteEntry]:
        """Ask the phone for its favourites.

        Raises CompanionError on transport problems or an error reply and
        DecodeError on an unreadable list.
        """
        reply = self.transport.send_message({"request": FAVORITES_REQUEST}, timeout=self.timeout)
        status = reply.get("status")
        if status == STATUS_SUCCESS and "favorites" in reply:
            return decode_favorites(reply["favorites"])
        if status is None and "favorites" in reply:
            # older phone builds reply with the bare list
            return decode_favorites(reply["favorites"])
        if status == STATUS_ERROR:
            raise CompanionError(f"Phone reported error: {reply.get('message', 'unknown')}")
        raise CompanionError(f"Unexpected reply from phone: status={status!r}")

    def in_cooldown(self, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        if self.cooldown_until is None:
            return False
        if now < self.cooldown_until:
            return True
        logger.info("Sync cooldown elapsed; resuming", extra={"cooldown_round": self.cooldown_round})
        self.cooldown_until = None
        self.consecutive_failures = 0
        return False

    def attempt_sync(self, force: bool = False) -> bool:
        """Pull favourites if the interval, cooldown and reachability allow it."""
        with self._lock:
            now = self._clock()
            if self.in_cooldown(now):
                return False
            if not force and self.last_attempt is not None and now - self.last_attempt < self.sync_interval:
                return False
            if not self.transport.is_reachable():
                logger.debug("Phone not reachable; keeping local favourites")
                return False
            self.last_attempt = now
            try:
                entries = self.request_favorites()
            except (CompanionError, DecodeError) as exc:
                self._record_failure(now, exc)
                return False
            self._record_success(now)
        self._apply(entries)
        return True

    def _record_failure(self, now: float, exc: Exception) -> None:
        self.consecutive_failures += 1
        logger.warning(
            "Favourites sync failed",
            extra={"failures": self.consecutive_failures, "error": type(exc).__name__, "detail": str(exc)},
        )
        if self.consecutive_failures >= self.max_failures:
            self.cooldown_round += 1
            delay = min(self.backoff_cap, self.backoff_step * self.cooldown_round)
            self.cooldown_until = now + delay
            logger.warning(
                "Pausing favourites sync",
                extra={"cooldown_seconds": delay, "cooldown_round": self.cooldown_round},
            )

    def _record_success(self, now: float) -> None:
        self.consecutive_failures = 0
        self.cooldown_round = 0
        self.cooldown_until = None
        self.last_success = now

    def check_connectivity(self) -> bool:
        """Sync immediately when the phone has just become reachable."""
        reachable = self.transport.is_reachable()
        became_reachable = reachable and not self._was_reachable
        self._was_reachable = reachable
        if became_reachable:
            logger.info("Phone became reachable; syncing favourites")
            self.attempt_sync(force=True)
        return reachable

    def step(self) -> float:
        """One scheduler tick: connectivity check plus interval-gated sync."""
        self.check_connectivity()
        self.attempt_sync()
        return self.connectivity_interval

    # ------------------------------------------------------------------
    # push
    # ------------------------------------------------------------------

    def handle_message(self, message: Message) -> Message:
        if "favorites" not in message:
            return {"status": STATUS_NO_DATA}
        try:
            entries = decode_favorites(message["favorites"])
        except DecodeError as exc:
            logger.warning("Rejected favourites push: %s", exc)
            return {"status": STATUS_ERROR, "message": str(exc)}
        with self._lock:
            self._record_success(self._clock())
        self._apply(entries)
        return {"status": STATUS_SUCCESS, "count": len(entries)}

    # ------------------------------------------------------------------
    # local mirror
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[List[FavoriteEntry]], None]) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    def _apply(self, entries: List[FavoriteEntry]) -> None:
        entries = sorted(entries, key=lambda e: e.sort_order)
        if entries != self.store.read_favorites():
            self.store.write_favorites(entries)
            logger.info("Mirrored favourites from phone", extra={"count": len(entries)})
        for listener in list(self._listeners):
            try:
                listener(entries)
            except Exception as exc:
                logger.warning("Favourites listener raised: %s", exc)
