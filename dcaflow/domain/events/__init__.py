"""Event bus and event models."""

from dcaflow.domain.events.event_types import ALL_EVENT_TYPES, EventType
from dcaflow.domain.events.event import Event, EventFilter
from dcaflow.domain.events.handler import EventHandler, EventPredicate
from dcaflow.domain.events.bus import EventBus, EventStats, Subscription
from dcaflow.domain.events.stderr_observer import StderrEventObserver

__all__ = [
    "ALL_EVENT_TYPES",
    "EventType",
    "Event",
    "EventFilter",
    "EventHandler",
    "EventPredicate",
    "EventBus",
    "EventStats",
    "Subscription",
    "StderrEventObserver",
]
