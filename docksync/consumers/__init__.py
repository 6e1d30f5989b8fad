"""Consumers that render station data: foreground view models and widget timelines."""

from .foreground import ErrorBanner, ForegroundConsumer
from .widgets import (
    ClosestStationWidget,
    ConfigurableDockWidget,
    EntryStatus,
    InteractiveDockWidget,
    Timeline,
    WidgetEntry,
)

__all__ = [
    "ErrorBanner",
    "ForegroundConsumer",
    "ClosestStationWidget",
    "ConfigurableDockWidget",
    "EntryStatus",
    "InteractiveDockWidget",
    "Timeline",
    "WidgetEntry",
]
