"""Typed publish/subscribe hub.

Every engine component talks to the others through an ``EventBus``. Handlers
for one event are started in subscription-registration order and the publish
call waits until all of them have settled. A failing handler never affects its
siblings: the failure is logged and re-published as an ``agent_error`` event,
except when the failing handler was itself handling an ``agent_error`` event,
in which case it is only logged.
"""

import asyncio
import inspect
import logging
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from dcaflow.domain.constants import (
    DEFAULT_EVENT_MAX_AGE_SECONDS,
    DEFAULT_MAX_EVENT_HISTORY,
    STALE_SUBSCRIPTION_SECONDS,
)
from dcaflow.domain.events.event import Event, EventFilter
from dcaflow.domain.events.event_types import EventType
from dcaflow.domain.events.handler import EventHandler, EventPredicate

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Subscription:
    """A registered handler and its delivery filters."""

    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    created_at: datetime
    predicate: EventPredicate | None = None
    session_id: str | None = None
    active: bool = True
    last_triggered: datetime | None = None
    error_count: int = 0

    def matches(self, event: Event) -> bool:
        if not self.active or event.type not in self.event_types:
            return False
        if self.session_id is not None and event.session_id != self.session_id:
            return False
        if self.predicate is not None and not self.predicate(event):
            return False
        return True


@dataclass
class EventStats:
    total_events: int = 0
    events_by_type: dict[str, int] = field(default_factory=dict)
    events_by_source: dict[str, int] = field(default_factory=dict)
    active_subscriptions: int = 0
    error_count: int = 0
    warning_count: int = 0


class EventBus:
    """Process-wide event hub with a bounded, age-limited history."""

    def __init__(
        self,
        *,
        max_history: int = DEFAULT_MAX_EVENT_HISTORY,
        max_age_seconds: float = DEFAULT_EVENT_MAX_AGE_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be positive")
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[Event] = deque(maxlen=max_history)
        self._max_age = timedelta(seconds=max_age_seconds)
        self._clock = clock or utc_now

    @property
    def max_history(self) -> int:
        return self._history.maxlen or 0

    # ========================================================================
    # Subscriptions
    # ========================================================================

    def subscribe(
        self,
        event_types: Iterable[EventType],
        handler: EventHandler,
        *,
        predicate: EventPredicate | None = None,
        session_id: str | None = None,
    ) -> str:
        """Register a handler for the given event types. Returns the subscription id."""
        types = frozenset(EventType(t) for t in event_types)
        if not types:
            raise ValueError("At least one event type is required")
        subscription_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[subscription_id] = Subscription(
            id=subscription_id,
            event_types=types,
            handler=handler,
            created_at=self._clock(),
            predicate=predicate,
            session_id=session_id,
        )
        logger.debug(
            "Subscribed %s to %s", subscription_id, sorted(t.value for t in types)
        )
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    def pause_subscription(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return False
        subscription.active = False
        return True

    def resume_subscription(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return False
        subscription.active = True
        return True

    def active_subscriptions(self) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.active]

    # ========================================================================
    # Publishing
    # ========================================================================

    async def publish(self, event: Event) -> None:
        """Record the event and deliver it to every matching subscription."""
        self._history.append(event)
        # Snapshot so handlers that (un)subscribe don't disturb this delivery.
        matched: list[Subscription] = []
        broken: list[tuple[Subscription, Exception]] = []
        for subscription in list(self._subscriptions.values()):
            try:
                if subscription.matches(event):
                    matched.append(subscription)
            except Exception as e:
                # A raising predicate counts as a non-match for that subscription only.
                subscription.error_count += 1
                broken.append((subscription, e))
        if matched:
            await asyncio.gather(*(self._deliver(s, event) for s in matched))
        for subscription, error in broken:
            await self._handler_failed(subscription, event, error)

    async def emit(
        self,
        event_type: EventType,
        *,
        source: str,
        session_id: str | None = None,
        data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        """Build an event stamped with the bus clock and publish it."""
        event = Event(
            type=event_type,
            timestamp=self._clock(),
            session_id=session_id,
            source=source,
            data=data or {},
            metadata=metadata,
        )
        await self.publish(event)
        return event

    async def agent_error(
        self,
        source: str,
        error: str,
        *,
        session_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> Event:
        return await self.emit(
            EventType.AGENT_ERROR,
            source=source,
            session_id=session_id,
            data={"error": error, **(context or {})},
            metadata={"priority": "high"},
        )

    async def agent_warning(
        self,
        source: str,
        message: str,
        *,
        session_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> Event:
        return await self.emit(
            EventType.AGENT_WARNING,
            source=source,
            session_id=session_id,
            data={"message": message, **(context or {})},
            metadata={"priority": "medium"},
        )

    async def _deliver(self, subscription: Subscription, event: Event) -> None:
        try:
            result = subscription.handler(event)
            if inspect.isawaitable(result):
                await result
            subscription.last_triggered = self._clock()
        except Exception as e:
            subscription.error_count += 1
            await self._handler_failed(subscription, event, e)

    async def _handler_failed(
        self, subscription: Subscription, event: Event, error: Exception
    ) -> None:
        if event.type == EventType.AGENT_ERROR:
            logger.error(
                "Handler %s failed on agent_error event %s: %s",
                subscription.id,
                event.id,
                error,
            )
            return
        logger.warning(
            "Handler %s failed on %s: %s", subscription.id, event.type.value, error
        )
        await self.agent_error(
            "event_bus",
            str(error),
            session_id=event.session_id,
            context={
                "subscription_id": subscription.id,
                "original_event_id": event.id,
                "original_event_type": event.type.value,
            },
        )

    # ========================================================================
    # History
    # ========================================================================

    def history(self, event_filter: EventFilter | None = None) -> list[Event]:
        """Return matching events, newest first."""
        event_filter = event_filter or EventFilter()
        cutoff = self._clock() - self._max_age
        events = [
            e
            for e in reversed(self._history)
            if e.timestamp >= cutoff and event_filter.matches(e)
        ]
        if event_filter.limit is not None:
            events = events[: event_filter.limit]
        return events

    def session_events(
        self, session_id: str, types: list[EventType] | None = None
    ) -> list[Event]:
        return self.history(EventFilter(session_id=session_id, types=types))

    def clear_session_events(self, session_id: str) -> int:
        kept = [e for e in self._history if e.session_id != session_id]
        removed = len(self._history) - len(kept)
        self._history.clear()
        self._history.extend(kept)
        return removed

    def stats(self, since: datetime | None = None) -> EventStats:
        events = [e for e in self._history if since is None or e.timestamp >= since]
        by_type = Counter(e.type.value for e in events)
        by_source = Counter(e.source for e in events)
        return EventStats(
            total_events=len(events),
            events_by_type=dict(by_type),
            events_by_source=dict(by_source),
            active_subscriptions=len(self.active_subscriptions()),
            error_count=by_type.get(EventType.AGENT_ERROR.value, 0),
            warning_count=by_type.get(EventType.AGENT_WARNING.value, 0),
        )

    def cleanup(self) -> int:
        """Drop events past the age cutoff and paused subscriptions older than an hour.

        Returns the number of events removed.
        """
        now = self._clock()
        cutoff = now - self._max_age
        kept = [e for e in self._history if e.timestamp >= cutoff]
        removed = len(self._history) - len(kept)
        if removed:
            self._history.clear()
            self._history.extend(kept)

        stale_before = now - timedelta(seconds=STALE_SUBSCRIPTION_SECONDS)
        stale = [
            s.id
            for s in self._subscriptions.values()
            if not s.active and s.created_at < stale_before
        ]
        for subscription_id in stale:
            del self._subscriptions[subscription_id]

        if removed or stale:
            logger.info(
                "Event cleanup removed %d events and %d subscriptions",
                removed,
                len(stale),
            )
        return removed
