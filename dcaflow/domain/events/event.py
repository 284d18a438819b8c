"""Bus event payload model."""

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from dcaflow.domain.events.event_types import EventType


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class Event(BaseModel):
    """Immutable record of something that happened in the engine."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_event_id)
    type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str | None = None
    source: str
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] | None = None

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)


class EventFilter(BaseModel):
    """Criteria for querying event history."""

    types: list[EventType] | None = None
    session_id: str | None = None
    source: str | None = None
    since: datetime | None = None
    limit: int | None = Field(default=None, ge=1)

    def matches(self, event: Event) -> bool:
        if self.types and event.type not in self.types:
            return False
        if self.session_id is not None and event.session_id != self.session_id:
            return False
        if self.source is not None and event.source != self.source:
            return False
        if self.since is not None and event.timestamp < self.since:
            return False
        return True
