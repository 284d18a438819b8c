"""Tests for EventBus delivery, failure isolation and history."""

from unittest.mock import MagicMock

import pytest

from dcaflow.domain.events import Event, EventBus, EventFilter, EventType

from conftest import FakeClock


def _bus(clock: FakeClock, **kwargs) -> EventBus:
    return EventBus(clock=clock, **kwargs)


class TestSubscribe:
    """Tests for subscription filtering."""

    async def test_handler_receives_only_subscribed_types(self, clock: FakeClock) -> None:
        """A handler sees only the event types it subscribed to."""
        bus = _bus(clock)
        handler = MagicMock()
        bus.subscribe([EventType.DCA_PLAN_CREATED], handler)

        await bus.emit(EventType.DCA_PLAN_CREATED, source="test")
        await bus.emit(EventType.DCA_LEG_EXECUTED, source="test")

        assert handler.call_count == 1
        assert handler.call_args[0][0].type == EventType.DCA_PLAN_CREATED

    async def test_session_filter(self, clock: FakeClock) -> None:
        """A session-scoped subscription ignores other sessions."""
        bus = _bus(clock)
        handler = MagicMock()
        bus.subscribe([EventType.DCA_PLAN_CREATED], handler, session_id="s1")

        await bus.emit(EventType.DCA_PLAN_CREATED, source="test", session_id="s2")
        await bus.emit(EventType.DCA_PLAN_CREATED, source="test", session_id="s1")

        assert handler.call_count == 1
        assert handler.call_args[0][0].session_id == "s1"

    async def test_predicate_filter(self, clock: FakeClock) -> None:
        """A predicate decides delivery after type and session match."""
        bus = _bus(clock)
        handler = MagicMock()
        bus.subscribe(
            [EventType.MARKET_DATA_UPDATED],
            handler,
            predicate=lambda e: e.data.get("token") == "ETH",
        )

        await bus.emit(EventType.MARKET_DATA_UPDATED, source="test", data={"token": "BTC"})
        await bus.emit(EventType.MARKET_DATA_UPDATED, source="test", data={"token": "ETH"})

        assert handler.call_count == 1

    def test_subscribe_requires_event_types(self, clock: FakeClock) -> None:
        """Empty event type lists are rejected."""
        bus = _bus(clock)
        with pytest.raises(ValueError):
            bus.subscribe([], MagicMock())

    async def test_unsubscribe_stops_delivery(self, clock: FakeClock) -> None:
        """An unsubscribed handler is not called again."""
        bus = _bus(clock)
        handler = MagicMock()
        sub_id = bus.subscribe([EventType.SESSION_CREATED], handler)

        assert bus.unsubscribe(sub_id) is True
        await bus.emit(EventType.SESSION_CREATED, source="test")

        handler.assert_not_called()
        assert bus.unsubscribe(sub_id) is False

    async def test_paused_subscription_skipped_until_resumed(self, clock: FakeClock) -> None:
        """Paused subscriptions receive nothing; resumed ones do."""
        bus = _bus(clock)
        handler = MagicMock()
        sub_id = bus.subscribe([EventType.SESSION_CREATED], handler)

        bus.pause_subscription(sub_id)
        await bus.emit(EventType.SESSION_CREATED, source="test")
        bus.resume_subscription(sub_id)
        await bus.emit(EventType.SESSION_CREATED, source="test")

        assert handler.call_count == 1

    async def test_async_handlers_awaited(self, clock: FakeClock) -> None:
        """Coroutine handlers finish before publish returns."""
        bus = _bus(clock)
        seen: list[str] = []

        async def handler(event: Event) -> None:
            seen.append(event.id)

        bus.subscribe([EventType.SESSION_CREATED], handler)
        event = await bus.emit(EventType.SESSION_CREATED, source="test")

        assert seen == [event.id]

    async def test_handlers_started_in_registration_order(self, clock: FakeClock) -> None:
        """Delivery starts handlers in the order they subscribed."""
        bus = _bus(clock)
        order: list[int] = []
        for n in range(3):
            bus.subscribe([EventType.SESSION_CREATED], lambda e, n=n: order.append(n))

        await bus.emit(EventType.SESSION_CREATED, source="test")

        assert order == [0, 1, 2]


class TestHandlerFailures:
    """Tests for failure isolation."""

    async def test_failing_handler_does_not_affect_siblings(self, clock: FakeClock) -> None:
        """A raising handler does not stop other handlers and becomes an agent_error."""
        bus = _bus(clock)
        sibling = MagicMock()
        errors = MagicMock()

        def broken(event: Event) -> None:
            raise RuntimeError("boom")

        sub_id = bus.subscribe([EventType.DCA_PLAN_CREATED], broken)
        bus.subscribe([EventType.DCA_PLAN_CREATED], sibling)
        bus.subscribe([EventType.AGENT_ERROR], errors)

        original = await bus.emit(EventType.DCA_PLAN_CREATED, source="test", session_id="s1")

        sibling.assert_called_once()
        errors.assert_called_once()
        error_event = errors.call_args[0][0]
        assert error_event.data["error"] == "boom"
        assert error_event.data["subscription_id"] == sub_id
        assert error_event.data["original_event_id"] == original.id
        assert error_event.data["original_event_type"] == "dca_plan_created"
        assert error_event.session_id == "s1"

    async def test_error_count_incremented(self, clock: FakeClock) -> None:
        """The failing subscription records its error count."""
        bus = _bus(clock)

        def broken(event: Event) -> None:
            raise RuntimeError("boom")

        sub_id = bus.subscribe([EventType.DCA_PLAN_CREATED], broken)
        await bus.emit(EventType.DCA_PLAN_CREATED, source="test")
        await bus.emit(EventType.DCA_PLAN_CREATED, source="test")

        sub = next(s for s in bus.active_subscriptions() if s.id == sub_id)
        assert sub.error_count == 2

    async def test_agent_error_handler_failure_is_not_republished(
        self, clock: FakeClock
    ) -> None:
        """A handler failing on agent_error is only logged, never re-published."""
        bus = _bus(clock)
        calls = 0

        def broken(event: Event) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        bus.subscribe([EventType.AGENT_ERROR], broken)
        await bus.agent_error("test", "first")

        assert calls == 1
        assert len(bus.history(EventFilter(types=[EventType.AGENT_ERROR]))) == 1

    async def test_raising_predicate_is_isolated(self, clock: FakeClock) -> None:
        """A predicate that raises skips its subscription and is reported."""
        bus = _bus(clock)
        sibling = MagicMock()
        errors = MagicMock()
        sub_id = bus.subscribe(
            [EventType.AGENT_WARNING], MagicMock(), predicate=lambda e: e.data["missing"]
        )
        bus.subscribe([EventType.AGENT_WARNING], sibling)
        bus.subscribe([EventType.AGENT_ERROR], errors)

        await bus.agent_warning("test", "careful")

        sibling.assert_called_once()
        errors.assert_called_once()
        assert errors.call_args[0][0].data["subscription_id"] == sub_id
        sub = next(s for s in bus.active_subscriptions() if s.id == sub_id)
        assert sub.error_count == 1


class TestHistory:
    """Tests for bounded, age-limited history."""

    async def test_history_newest_first(self, clock: FakeClock) -> None:
        bus = _bus(clock)
        first = await bus.emit(EventType.SESSION_CREATED, source="test")
        clock.advance(seconds=1)
        second = await bus.emit(EventType.SESSION_CREATED, source="test")

        assert [e.id for e in bus.history()] == [second.id, first.id]

    async def test_history_bounded_by_max_history(self, clock: FakeClock) -> None:
        """Only the newest max_history events are kept."""
        bus = _bus(clock, max_history=3)
        emitted = []
        for _ in range(5):
            emitted.append(await bus.emit(EventType.SESSION_CREATED, source="test"))

        assert [e.id for e in bus.history()] == [e.id for e in reversed(emitted[-3:])]

    async def test_history_excludes_events_past_max_age(self, clock: FakeClock) -> None:
        bus = _bus(clock, max_age_seconds=60)
        await bus.emit(EventType.SESSION_CREATED, source="test")
        clock.advance(seconds=61)
        fresh = await bus.emit(EventType.SESSION_CREATED, source="test")

        assert [e.id for e in bus.history()] == [fresh.id]

    async def test_filter_and_limit(self, clock: FakeClock) -> None:
        bus = _bus(clock)
        for _ in range(3):
            await bus.emit(EventType.DCA_LEG_EXECUTED, source="scheduler", session_id="s1")
        await bus.emit(EventType.AGENT_WARNING, source="other", session_id="s1")

        events = bus.history(
            EventFilter(types=[EventType.DCA_LEG_EXECUTED], source="scheduler", limit=2)
        )

        assert len(events) == 2
        assert all(e.type == EventType.DCA_LEG_EXECUTED for e in events)

    async def test_clear_session_events(self, clock: FakeClock) -> None:
        bus = _bus(clock)
        await bus.emit(EventType.SESSION_CREATED, source="test", session_id="s1")
        await bus.emit(EventType.SESSION_CREATED, source="test", session_id="s1")
        await bus.emit(EventType.SESSION_CREATED, source="test", session_id="s2")

        assert bus.clear_session_events("s1") == 2
        assert bus.session_events("s1") == []
        assert len(bus.session_events("s2")) == 1

    async def test_cleanup_drops_old_events_and_stale_paused_subscriptions(
        self, clock: FakeClock
    ) -> None:
        bus = _bus(clock, max_age_seconds=60)
        await bus.emit(EventType.SESSION_CREATED, source="test")
        paused = bus.subscribe([EventType.SESSION_CREATED], MagicMock())
        active = bus.subscribe([EventType.SESSION_CREATED], MagicMock())
        bus.pause_subscription(paused)

        clock.advance(hours=2)

        assert bus.cleanup() == 1
        ids = {s.id for s in bus.active_subscriptions()}
        assert active in ids
        assert bus.resume_subscription(paused) is False

    async def test_stats_counts_types_and_errors(self, clock: FakeClock) -> None:
        bus = _bus(clock)
        await bus.emit(EventType.SESSION_CREATED, source="a")
        await bus.agent_error("b", "bad")
        await bus.agent_warning("b", "careful")

        stats = bus.stats()

        assert stats.total_events == 3
        assert stats.error_count == 1
        assert stats.warning_count == 1
        assert stats.events_by_source == {"a": 1, "b": 2}
