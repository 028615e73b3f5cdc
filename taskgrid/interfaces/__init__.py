"""Protocols shared across TaskGrid components."""

from taskgrid.interfaces.event_bus import (
    EventHandler,
    EventType,
    IEventChannel,
    LifecycleEvent,
)
from taskgrid.interfaces.worker import CostTier, IWorker, Outcome

__all__ = [
    "CostTier",
    "EventHandler",
    "EventType",
    "IEventChannel",
    "IWorker",
    "LifecycleEvent",
    "Outcome",
]
