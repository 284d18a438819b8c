"""Live event streams as newline-delimited JSON frames.

A stream opens with a ``connection`` frame followed by a ``subscription``
frame, then carries one ``event`` frame per matching bus event. While no
events arrive a ``heartbeat`` frame is sent every ``heartbeat_interval``
seconds; after ``idle_timeout`` seconds without events the stream closes.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable

from dcaflow.domain.constants import DEFAULT_HEARTBEAT_SECONDS, DEFAULT_STREAM_IDLE_SECONDS
from dcaflow.domain.events.bus import EventBus
from dcaflow.domain.events.event import Event
from dcaflow.domain.events.event_types import EventType

logger = logging.getLogger(__name__)

# Frames waiting for a slow reader beyond this are dropped oldest-first.
MAX_BUFFERED_FRAMES = 1000


class StreamKind(str, Enum):
    SESSION = "session"
    MARKET = "market"
    EXECUTION = "execution"
    MONITORING = "monitoring"


class FrameType(str, Enum):
    CONNECTION = "connection"
    SUBSCRIPTION = "subscription"
    EVENT = "event"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


STREAM_EVENT_TYPES: dict[StreamKind, frozenset[EventType]] = {
    StreamKind.SESSION: frozenset(
        {
            EventType.DCA_PLAN_CREATED,
            EventType.DCA_EXECUTION_STARTED,
            EventType.DCA_LEG_EXECUTED,
            EventType.DCA_EXECUTION_COMPLETED,
            EventType.MARKET_DATA_UPDATED,
            EventType.RISK_ASSESSMENT_CHANGED,
            EventType.AGENT_ERROR,
            EventType.AGENT_WARNING,
        }
    ),
    StreamKind.EXECUTION: frozenset(
        {
            EventType.DCA_EXECUTION_STARTED,
            EventType.DCA_LEG_EXECUTED,
            EventType.DCA_EXECUTION_COMPLETED,
            EventType.DCA_EXECUTION_FAILED,
            EventType.DCA_EXECUTION_PAUSED,
            EventType.DCA_EXECUTION_RESUMED,
        }
    ),
    StreamKind.MARKET: frozenset(
        {EventType.MARKET_DATA_UPDATED, EventType.RISK_ASSESSMENT_CHANGED}
    ),
    StreamKind.MONITORING: frozenset({EventType.AGENT_ERROR, EventType.AGENT_WARNING}),
}


def frame(frame_type: FrameType, data: Any, subscription_id: str | None = None) -> str:
    payload: dict[str, Any] = {
        "type": frame_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
    if subscription_id is not None:
        payload["subscription_id"] = subscription_id
    return json.dumps(payload) + "\n"


class EventStream:
    def __init__(
        self,
        bus: EventBus,
        kind: StreamKind,
        event_types: Iterable[EventType],
        *,
        session_id: str | None = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS,
        idle_timeout: float = DEFAULT_STREAM_IDLE_SECONDS,
        on_close: Callable[[str], None] | None = None,
    ) -> None:
        self.id = f"stream_{uuid.uuid4().hex[:12]}"
        self.bus = bus
        self.kind = kind
        self.event_types = frozenset(event_types)
        self.session_id = session_id
        self.heartbeat_interval = heartbeat_interval
        self.idle_timeout = idle_timeout
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_BUFFERED_FRAMES)
        self._subscription_id: str | None = None
        self._closed = False
        self._last_event_at = 0.0
        self.events_sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> None:
        self._subscription_id = self.bus.subscribe(
            self.event_types, self._on_event, session_id=self.session_id
        )
        self._last_event_at = asyncio.get_running_loop().time()
        self._push(
            FrameType.CONNECTION,
            frame(
                FrameType.CONNECTION,
                {"stream_id": self.id, "kind": self.kind.value, "session_id": self.session_id},
            ),
        )
        self._push(
            FrameType.SUBSCRIPTION,
            frame(
                FrameType.SUBSCRIPTION,
                {"event_types": sorted(t.value for t in self.event_types)},
                self._subscription_id,
            ),
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._subscription_id is not None:
            self.bus.unsubscribe(self._subscription_id)
        self._push(None)
        if self._on_close is not None:
            self._on_close(self.id)
        logger.debug("Closed stream %s after %d events", self.id, self.events_sent)

    def _on_event(self, event: Event) -> None:
        if self._closed:
            return
        self._last_event_at = asyncio.get_running_loop().time()
        self._push(
            FrameType.EVENT,
            frame(FrameType.EVENT, event.model_dump(mode="json"), self._subscription_id),
        )

    def _push(self, frame_type: FrameType | None, text: str = "") -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None if frame_type is None else (frame_type, text))

    async def frames(self) -> AsyncIterator[str]:
        """Yield frames until the stream is closed or goes idle."""
        loop = asyncio.get_running_loop()
        last_heartbeat = loop.time()
        try:
            while True:
                now = loop.time()
                idle_left = self._last_event_at + self.idle_timeout - now
                if idle_left <= 0:
                    logger.info("Stream %s idle for %ss, closing", self.id, self.idle_timeout)
                    break
                heartbeat_left = last_heartbeat + self.heartbeat_interval - now
                try:
                    item = await asyncio.wait_for(
                        self._queue.get(), timeout=max(min(idle_left, heartbeat_left), 0)
                    )
                except asyncio.TimeoutError:
                    if loop.time() >= last_heartbeat + self.heartbeat_interval:
                        last_heartbeat = loop.time()
                        yield frame(FrameType.HEARTBEAT, {"stream_id": self.id})
                    continue
                if item is None:
                    break
                frame_type, text = item
                if frame_type == FrameType.EVENT:
                    self.events_sent += 1
                yield text
        finally:
            self.close()

    def __aiter__(self) -> AsyncIterator[str]:
        return self.frames()


class EventStreamManager:
    def __init__(
        self,
        bus: EventBus,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS,
        idle_timeout: float = DEFAULT_STREAM_IDLE_SECONDS,
    ) -> None:
        self.bus = bus
        self.heartbeat_interval = heartbeat_interval
        self.idle_timeout = idle_timeout
        self._streams: dict[str, EventStream] = {}

    def open(
        self,
        kind: StreamKind | str,
        *,
        session_id: str | None = None,
        event_types: Iterable[EventType | str] | None = None,
    ) -> EventStream:
        """Open a stream. ``session`` streams require a session id.

        Raises:
            ValueError: If the kind is unknown or a session stream has no session id
        """
        kind = StreamKind(kind)
        if kind == StreamKind.SESSION and not session_id:
            raise ValueError("session streams require a session_id")
        types = (
            frozenset(EventType(t) for t in event_types)
            if event_types
            else STREAM_EVENT_TYPES[kind]
        )
        stream = EventStream(
            self.bus,
            kind,
            types,
            session_id=session_id,
            heartbeat_interval=self.heartbeat_interval,
            idle_timeout=self.idle_timeout,
            on_close=self._forget,
        )
        stream.open()
        self._streams[stream.id] = stream
        logger.info("Opened %s stream %s (session=%s)", kind.value, stream.id, session_id)
        return stream

    def close(self, stream_id: str) -> bool:
        stream = self._streams.pop(stream_id, None)
        if stream is None:
            return False
        stream.close()
        return True

    def close_all(self) -> int:
        ids = list(self._streams)
        for stream_id in ids:
            self.close(stream_id)
        return len(ids)

    def _forget(self, stream_id: str) -> None:
        self._streams.pop(stream_id, None)

    def stats(self) -> dict[str, Any]:
        by_kind: dict[str, int] = {}
        for stream in self._streams.values():
            by_kind[stream.kind.value] = by_kind.get(stream.kind.value, 0) + 1
        return {"active_streams": len(self._streams), "streams_by_kind": by_kind}
