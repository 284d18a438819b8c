from .event_stream import (
    STREAM_EVENT_TYPES,
    EventStream,
    EventStreamManager,
    FrameType,
    StreamKind,
)

__all__ = [
    "STREAM_EVENT_TYPES",
    "EventStream",
    "EventStreamManager",
    "FrameType",
    "StreamKind",
]
