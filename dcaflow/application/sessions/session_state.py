"""In-memory session state with snapshots and idle expiry.

Each session holds a key/value dict. Every write snapshots the previous data
first, keeping at most ``max_snapshots`` per session, so a session can be
reverted. A session idle for longer than ``session_timeout`` reads as missing;
``cleanup`` removes it and publishes ``session_expired`` so other stores can
drop what they hold for it.
"""

import copy
import logging
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from dcaflow.domain.constants import (
    DEFAULT_MAX_SESSION_SNAPSHOTS,
    DEFAULT_SESSION_TIMEOUT_SECONDS,
)
from dcaflow.domain.errors import ValidationError
from dcaflow.domain.events.bus import EventBus
from dcaflow.domain.events.event import Event
from dcaflow.domain.events.event_types import ALL_EVENT_TYPES, EventType
from dcaflow.domain.models.session import SessionExport, SessionState, StateSnapshot

logger = logging.getLogger(__name__)


class _Session:
    __slots__ = ("state", "snapshots", "next_sequence")

    def __init__(self, state: SessionState, max_snapshots: int) -> None:
        self.state = state
        self.snapshots: deque[StateSnapshot] = deque(maxlen=max_snapshots)
        self.next_sequence = 1


class SessionStateStore:
    def __init__(
        self,
        bus: EventBus,
        *,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT_SECONDS,
        max_snapshots: int = DEFAULT_MAX_SESSION_SNAPSHOTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if session_timeout <= 0:
            raise ValueError("session_timeout must be positive")
        if max_snapshots < 1:
            raise ValueError("max_snapshots must be positive")
        self._bus = bus
        self._timeout = timedelta(seconds=session_timeout)
        self.max_snapshots = max_snapshots
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: dict[str, _Session] = {}
        self._subscription_id: str | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    # ========================================================================
    # Sessions
    # ========================================================================

    def create_session(
        self, user_id: str | None = None, session_id: str | None = None
    ) -> SessionState:
        session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        if self._live(session_id) is not None:
            raise ValidationError(f"Session {session_id} already exists")
        now = self._clock()
        state = SessionState(
            session_id=session_id, user_id=user_id, created_at=now, updated_at=now
        )
        self._sessions[session_id] = _Session(state, self.max_snapshots)
        logger.debug("Created session %s", session_id)
        return state.model_copy(deep=True)

    def ensure(self, session_id: str, user_id: str | None = None) -> SessionState:
        """Return the live session, creating it when missing. Refreshes its idle clock."""
        session = self._live(session_id)
        if session is None:
            return self.create_session(user_id, session_id)
        if user_id and session.state.user_id is None:
            session.state.user_id = user_id
        session.state.updated_at = self._clock()
        return session.state.model_copy(deep=True)

    def get(self, session_id: str) -> SessionState | None:
        session = self._live(session_id)
        return session.state.model_copy(deep=True) if session else None

    def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def active_sessions(self) -> list[SessionState]:
        now = self._clock()
        return [
            s.state.model_copy(deep=True)
            for s in self._sessions.values()
            if not self._expired(s, now)
        ]

    # ========================================================================
    # State
    # ========================================================================

    def get_state(self, session_id: str, key: str, default: Any = None) -> Any:
        session = self._live(session_id)
        if session is None or key not in session.state.data:
            return default
        return copy.deepcopy(session.state.data[key])

    def all_state(self, session_id: str) -> dict[str, Any]:
        session = self._live(session_id)
        return copy.deepcopy(session.state.data) if session else {}

    def set_state(self, session_id: str, key: str, value: Any) -> bool:
        return self.merge_state(session_id, {key: value})

    def merge_state(self, session_id: str, values: dict[str, Any]) -> bool:
        """Write several keys under a single snapshot. False when the session is gone."""
        session = self._live(session_id)
        if session is None:
            return False
        self._snapshot(session)
        session.state.data.update(copy.deepcopy(values))
        session.state.updated_at = self._clock()
        return True

    def update_state(
        self, session_id: str, key: str, updater: Callable[[Any], Any]
    ) -> bool:
        session = self._live(session_id)
        if session is None:
            return False
        current = copy.deepcopy(session.state.data.get(key))
        return self.set_state(session_id, key, updater(current))

    def delete_state(self, session_id: str, key: str) -> bool:
        session = self._live(session_id)
        if session is None or key not in session.state.data:
            return False
        self._snapshot(session)
        del session.state.data[key]
        session.state.updated_at = self._clock()
        return True

    # ========================================================================
    # Snapshots
    # ========================================================================

    def snapshots(self, session_id: str) -> list[StateSnapshot]:
        """Snapshots oldest first."""
        session = self._live(session_id)
        if session is None:
            return []
        return [s.model_copy(deep=True) for s in session.snapshots]

    def revert(self, session_id: str, sequence: int) -> bool:
        """Restore the data captured by snapshot ``sequence``. The revert is itself snapshotted."""
        session = self._live(session_id)
        if session is None:
            return False
        target = next((s for s in session.snapshots if s.sequence == sequence), None)
        if target is None:
            return False
        self._snapshot(session)
        session.state.data = copy.deepcopy(target.data)
        session.state.updated_at = self._clock()
        logger.info("Reverted session %s to snapshot %d", session_id, sequence)
        return True

    def _snapshot(self, session: _Session) -> None:
        session.snapshots.append(
            StateSnapshot(
                session_id=session.state.session_id,
                sequence=session.next_sequence,
                timestamp=self._clock(),
                data=copy.deepcopy(session.state.data),
            )
        )
        session.next_sequence += 1

    # ========================================================================
    # Expiry
    # ========================================================================

    async def cleanup(self) -> int:
        """Remove idle sessions and publish ``session_expired`` for each. Returns the count."""
        now = self._clock()
        expired = [s for s in self._sessions.values() if self._expired(s, now)]
        for session in expired:
            del self._sessions[session.state.session_id]
        for session in expired:
            state = session.state
            await self._bus.emit(
                EventType.SESSION_EXPIRED,
                source="session_state",
                session_id=state.session_id,
                data={
                    "session_id": state.session_id,
                    "user_id": state.user_id,
                    "idle_seconds": (now - state.updated_at).total_seconds(),
                },
            )
        if expired:
            logger.info("Expired %d idle sessions", len(expired))
        return len(expired)

    def attach(self) -> str:
        """Track sessions from bus traffic: any event naming a session keeps it alive."""
        if self._subscription_id is None:
            self._subscription_id = self._bus.subscribe(
                ALL_EVENT_TYPES - {EventType.SESSION_EXPIRED}, self._on_event
            )
        return self._subscription_id

    def detach(self) -> None:
        if self._subscription_id is not None:
            self._bus.unsubscribe(self._subscription_id)
            self._subscription_id = None

    def _on_event(self, event: Event) -> None:
        if not event.session_id:
            return
        user_id = None
        if event.type == EventType.SESSION_CREATED:
            user_id = event.data.get("user_id")
        self.ensure(event.session_id, user_id)

    def _live(self, session_id: str) -> _Session | None:
        session = self._sessions.get(session_id)
        if session is None or self._expired(session, self._clock()):
            return None
        return session

    def _expired(self, session: _Session, now: datetime) -> bool:
        return session.state.updated_at + self._timeout <= now

    # ========================================================================
    # Export / import
    # ========================================================================

    def export_session(self, session_id: str) -> str | None:
        session = self._live(session_id)
        if session is None:
            return None
        export = SessionExport(
            session=session.state,
            snapshots=list(session.snapshots),
            exported_at=self._clock(),
        )
        return export.model_dump_json(indent=2)

    def import_session(self, text: str) -> str | None:
        """Load a session written by ``export_session``. Returns its id, or None if rejected."""
        try:
            export = SessionExport.model_validate_json(text)
        except PydanticValidationError as e:
            logger.warning("Rejected session import: %s", e)
            return None
        session_id = export.session.session_id
        if self._live(session_id) is not None:
            logger.warning("Rejected session import: %s already exists", session_id)
            return None
        if any(s.session_id != session_id for s in export.snapshots):
            logger.warning("Rejected session import: snapshot for another session")
            return None
        session = _Session(export.session, self.max_snapshots)
        # Imported sessions start a fresh idle window.
        session.state.updated_at = self._clock()
        session.snapshots.extend(sorted(export.snapshots, key=lambda s: s.sequence))
        if session.snapshots:
            session.next_sequence = session.snapshots[-1].sequence + 1
        self._sessions[session_id] = session
        return session_id

    def stats(self) -> dict[str, int]:
        now = self._clock()
        return {
            "total_sessions": len(self._sessions),
            "active_sessions": sum(
                1 for s in self._sessions.values() if not self._expired(s, now)
            ),
            "total_snapshots": sum(len(s.snapshots) for s in self._sessions.values()),
        }
