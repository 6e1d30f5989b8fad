"""Refresh policy shared by every consumer.

`decide` is a pure function from a consumer's current state to its next
schedule: how far apart its timeline entries should be, when it should wake
again, and whether it should ask a networking-capable consumer to fetch on
its behalf. `RefreshOrchestrator` binds the policy to one consumer and posts
those requests to the shared store mailbox.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from docksync.shared_store.store import SharedStateStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="orchestrator")

UNKNOWN_WIDGET_AGE = 300.0
TIMELINE_SPAN_SECONDS = 300.0
TIMELINE_MAX_ENTRIES = 20


class ConsumerKind(str, Enum):
    """Where the policy is being evaluated."""
    FOREGROUND = "foreground"
    BACKGROUND = "background"
    CLOSEST_WIDGET = "closest_widget"
    CONFIGURABLE_WIDGET = "configurable_widget"
    INTERACTIVE_WIDGET = "interactive_widget"

    @property
    def is_widget(self) -> bool:
        return self in (
            ConsumerKind.CLOSEST_WIDGET,
            ConsumerKind.CONFIGURABLE_WIDGET,
            ConsumerKind.INTERACTIVE_WIDGET,
        )


@dataclass(frozen=True)
class ConsumerState:
    """What a consumer is showing right now.

    `data_age` is None when no freshness timestamp was ever recorded.
    """
    data_age: Optional[float]
    has_data: bool = True
    has_error: bool = False
    is_placeholder: bool = False

    @property
    def is_startup(self) -> bool:
        return self.data_age is None


@dataclass(frozen=True)
class RefreshDecision:
    entry_interval: float
    policy_delay: float
    refresh_reason: Optional[str] = None

    @property
    def requests_refresh(self) -> bool:
        return self.refresh_reason is not None


def _default_policy(state: ConsumerState) -> RefreshDecision:
    if not state.has_data and state.is_startup:
        # cold start: wait instead of adding to the burst of launch requests
        return RefreshDecision(120, 180)
    if not state.has_data:
        return RefreshDecision(60, 90, "no_data")
    if state.has_error:
        return RefreshDecision(60, 90, "error")
    age = state.data_age or 0.0
    if age > 120:
        return RefreshDecision(90, 120, "stale")
    if age > 60:
        return RefreshDecision(60, 90)
    return RefreshDecision(60, 60)


def _configurable_policy(state: ConsumerState) -> RefreshDecision:
    age = UNKNOWN_WIDGET_AGE if state.data_age is None else state.data_age
    if not state.has_data:
        return RefreshDecision(30, 45, "no_data")
    if state.has_error:
        return RefreshDecision(30, 45, "error")
    if age > 120:
        return RefreshDecision(45, 60, "stale")
    if age > 60:
        return RefreshDecision(30, 45)
    return RefreshDecision(30, 30)


def _interactive_policy(state: ConsumerState) -> RefreshDecision:
    age = UNKNOWN_WIDGET_AGE if state.data_age is None else state.data_age
    if not state.has_data:
        return RefreshDecision(10, 15, "no_data")
    if state.has_error:
        return RefreshDecision(10, 15, "error")
    if age > 60:
        return RefreshDecision(15, 30, "stale")
    if age > 30:
        return RefreshDecision(30, 45)
    return RefreshDecision(45, 60)


def decide(kind: ConsumerKind, state: ConsumerState) -> RefreshDecision:
    """Pick the next schedule for a consumer. First matching tier wins."""
    kind = ConsumerKind(kind)
    if kind.is_widget and state.is_placeholder:
        return RefreshDecision(5, 10, "placeholder")
    if kind is ConsumerKind.CONFIGURABLE_WIDGET:
        return _configurable_policy(state)
    if kind is ConsumerKind.INTERACTIVE_WIDGET:
        return _interactive_policy(state)
    return _default_policy(state)


def timeline_dates(
    now: float,
    decision: RefreshDecision,
    span: float = TIMELINE_SPAN_SECONDS,
    max_entries: int = TIMELINE_MAX_ENTRIES,
) -> List[float]:
    """Entry times starting at `now`, `entry_interval` apart, covering at most `span` seconds."""
    count = max(1, min(max_entries, int(span // decision.entry_interval)))
    return [now + i * decision.entry_interval for i in range(count)]


class RefreshOrchestrator:
    """The refresh policy bound to one consumer and the shared store."""

    def __init__(
        self,
        store: SharedStateStore,
        consumer_id: str,
        kind: ConsumerKind,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.consumer_id = consumer_id
        self.kind = ConsumerKind(kind)
        self._clock = clock

    def data_age(self, station_id: str | None = None) -> Optional[float]:
        """Seconds since the station (or, failing that, the primary station) was written."""
        ts = self.store.station_timestamp(station_id) if station_id else None
        if ts is None:
            ts = self.store.primary_timestamp()
        if ts is None:
            return None
        return max(0.0, self._clock() - ts)

    def evaluate(
        self,
        state: ConsumerState,
        *,
        station_id: str | None = None,
        widget_id: str | None = None,
    ) -> RefreshDecision:
        """Apply the policy and post a refresh request when it asks for one."""
        decision = decide(self.kind, state)
        if decision.requests_refresh:
            self.store.request_refresh(
                decision.refresh_reason,
                self.consumer_id,
                station_id=station_id,
                widget_id=widget_id,
            )
        logger.debug(
            "Refresh decision",
            extra={
                "consumer": self.consumer_id,
                "entry_interval": decision.entry_interval,
                "policy_delay": decision.policy_delay,
                "refresh_reason": decision.refresh_reason,
            },
        )
        return decision
