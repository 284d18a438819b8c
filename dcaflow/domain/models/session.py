"""Session state models: per-session key/value state and its snapshots."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class SessionState(BaseModel):
    """Key/value state owned by one session. ``updated_at`` drives expiry."""

    session_id: str
    user_id: str | None = None
    created_at: datetime
    updated_at: datetime
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("session_id")
    @classmethod
    def _session_id_non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("session_id must be non-empty")
        return v


class StateSnapshot(BaseModel):
    """A copy of a session's data taken before a write."""

    session_id: str
    sequence: int = Field(ge=1)
    timestamp: datetime
    data: dict[str, Any] = Field(default_factory=dict)


class SessionExport(BaseModel):
    """Portable form of a session, as produced by ``export_session``."""

    session: SessionState
    snapshots: list[StateSnapshot] = Field(default_factory=list)
    exported_at: datetime
