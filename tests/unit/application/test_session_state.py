"""Tests for SessionStateStore."""

from unittest.mock import MagicMock

import pytest

from dcaflow.application.artifacts import ArtifactStore
from dcaflow.application.sessions import SessionStateStore
from dcaflow.domain.errors import ValidationError
from dcaflow.domain.events import EventBus, EventFilter, EventType

from conftest import FakeClock


@pytest.fixture
def bus(clock: FakeClock) -> EventBus:
    return EventBus(clock=clock)


@pytest.fixture
def sessions(bus: EventBus, clock: FakeClock) -> SessionStateStore:
    return SessionStateStore(bus, session_timeout=3600, max_snapshots=3, clock=clock)


class TestState:
    """Tests for reads, writes and snapshots."""

    def test_set_get_and_isolation(self, sessions: SessionStateStore) -> None:
        sessions.create_session("user_1", "s1")
        prefs = {"tokens": ["ETH"]}

        assert sessions.set_state("s1", "prefs", prefs)
        prefs["tokens"].append("BTC")
        read = sessions.get_state("s1", "prefs")
        read["tokens"].append("SOL")

        assert sessions.get_state("s1", "prefs") == {"tokens": ["ETH"]}
        assert sessions.get_state("s1", "missing", 0) == 0
        assert sessions.get("s1").user_id == "user_1"

    def test_writes_to_unknown_session_are_refused(self, sessions: SessionStateStore) -> None:
        assert sessions.set_state("nope", "k", 1) is False
        assert sessions.update_state("nope", "k", lambda v: v) is False
        assert sessions.all_state("nope") == {}

    def test_duplicate_session_rejected(self, sessions: SessionStateStore) -> None:
        sessions.create_session(session_id="s1")

        with pytest.raises(ValidationError):
            sessions.create_session(session_id="s1")

    def test_update_merge_and_delete(self, sessions: SessionStateStore) -> None:
        sessions.create_session(session_id="s1")
        sessions.set_state("s1", "count", 1)

        assert sessions.update_state("s1", "count", lambda v: v + 1)
        assert sessions.merge_state("s1", {"a": 1, "b": 2})
        assert sessions.delete_state("s1", "a")
        assert not sessions.delete_state("s1", "a")

        assert sessions.all_state("s1") == {"count": 2, "b": 2}

    def test_snapshots_bounded_and_revert(self, sessions: SessionStateStore) -> None:
        sessions.create_session(session_id="s1")
        for n in range(5):
            sessions.set_state("s1", "n", n)

        snapshots = sessions.snapshots("s1")
        assert [s.sequence for s in snapshots] == [3, 4, 5]
        assert snapshots[0].data == {"n": 1}

        assert sessions.revert("s1", 3)
        assert sessions.get_state("s1", "n") == 1
        assert sessions.snapshots("s1")[-1].data == {"n": 4}
        assert not sessions.revert("s1", 1)


class TestExpiry:
    """Tests for idle expiry and the session_expired event."""

    async def test_idle_session_reads_as_missing(
        self, sessions: SessionStateStore, clock: FakeClock
    ) -> None:
        sessions.create_session(session_id="s1")
        clock.advance(seconds=3600)

        assert sessions.get("s1") is None
        assert sessions.set_state("s1", "k", 1) is False
        assert sessions.active_sessions() == []

    async def test_writes_keep_session_alive(
        self, sessions: SessionStateStore, clock: FakeClock
    ) -> None:
        sessions.create_session(session_id="s1")
        clock.advance(seconds=3000)
        sessions.set_state("s1", "k", 1)
        clock.advance(seconds=3000)

        assert await sessions.cleanup() == 0
        assert sessions.get_state("s1", "k") == 1

    async def test_cleanup_publishes_session_expired(
        self, bus: EventBus, sessions: SessionStateStore, clock: FakeClock
    ) -> None:
        handler = MagicMock()
        bus.subscribe([EventType.SESSION_EXPIRED], handler)
        sessions.create_session("user_1", "s1")
        clock.advance(seconds=1800)
        sessions.create_session(session_id="s2")
        clock.advance(seconds=1800)

        assert await sessions.cleanup() == 1

        event = handler.call_args[0][0]
        assert event.session_id == "s1"
        assert event.data == {"session_id": "s1", "user_id": "user_1", "idle_seconds": 3600.0}
        assert len(sessions) == 1
        assert sessions.get("s2") is not None

    async def test_expiry_drops_attached_artifacts(
        self, bus: EventBus, sessions: SessionStateStore, clock: FakeClock
    ) -> None:
        artifacts = ArtifactStore(clock=clock)
        artifacts.attach(bus)
        sessions.attach()
        await bus.emit(
            EventType.SESSION_CREATED,
            source="test",
            session_id="s1",
            data={"session_id": "s1", "user_id": "user_1"},
        )
        artifacts.create_dca_plan("s1", {})
        artifacts.create_dca_plan("s2", {})
        clock.advance(seconds=3601)

        assert await sessions.cleanup() == 1

        assert artifacts.session_artifacts("s1") == []
        assert len(artifacts.session_artifacts("s2")) == 1
        assert len(bus.history(EventFilter(types=[EventType.SESSION_EXPIRED]))) == 1


class TestBusTracking:
    async def test_events_create_and_refresh_sessions(
        self, bus: EventBus, sessions: SessionStateStore, clock: FakeClock
    ) -> None:
        sessions.attach()
        await bus.emit(
            EventType.SESSION_CREATED,
            source="test",
            session_id="s1",
            data={"session_id": "s1", "user_id": "user_1"},
        )
        clock.advance(seconds=3000)
        await bus.emit(EventType.DCA_LEG_EXECUTED, source="test", session_id="s1")
        await bus.emit(EventType.MARKET_DATA_UPDATED, source="test")
        clock.advance(seconds=3000)

        assert await sessions.cleanup() == 0
        assert sessions.get("s1").user_id == "user_1"
        assert len(sessions) == 1

    async def test_detach_stops_tracking(
        self, bus: EventBus, sessions: SessionStateStore
    ) -> None:
        subscription_id = sessions.attach()
        assert sessions.attach() == subscription_id
        sessions.detach()

        await bus.emit(EventType.DCA_LEG_EXECUTED, source="test", session_id="s1")

        assert len(sessions) == 0


class TestExportImport:
    def test_export_import_keeps_state_and_snapshots(
        self, bus: EventBus, sessions: SessionStateStore, clock: FakeClock
    ) -> None:
        sessions.create_session("user_1", "s1")
        sessions.set_state("s1", "n", 1)
        sessions.set_state("s1", "n", 2)
        exported = sessions.export_session("s1")

        fresh = SessionStateStore(bus, clock=clock)
        assert fresh.import_session(exported) == "s1"
        assert fresh.all_state("s1") == {"n": 2}
        assert [s.sequence for s in fresh.snapshots("s1")] == [1, 2]
        fresh.set_state("s1", "n", 3)
        assert fresh.snapshots("s1")[-1].sequence == 3
        assert fresh.import_session(exported) is None

    def test_invalid_import_rejected(self, sessions: SessionStateStore) -> None:
        assert sessions.import_session("not json") is None
        assert sessions.import_session('{"session": {}}') is None
        assert sessions.export_session("missing") is None
