"""Callback binding models.

Each action kind is its own variant carrying only its own configuration; the
dispatcher selects a handler per variant.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from dcaflow.domain.constants import DEFAULT_WEBHOOK_TIMEOUT_SECONDS
from dcaflow.domain.events.event import Event
from dcaflow.domain.events.event_types import EventType


class ActionKind(str, Enum):
    WEBHOOK = "webhook"
    FUNCTION = "function"
    LOG = "log"


@dataclass(frozen=True)
class WebhookAction:
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS
    kind: ActionKind = field(default=ActionKind.WEBHOOK, init=False)


@dataclass(frozen=True)
class FunctionAction:
    handler: Callable[[Event], Union[Any, Awaitable[Any]]]
    kind: ActionKind = field(default=ActionKind.FUNCTION, init=False)


@dataclass(frozen=True)
class LogAction:
    level: int = logging.INFO
    message: str | None = None
    kind: ActionKind = field(default=ActionKind.LOG, init=False)


CallbackAction = Union[WebhookAction, FunctionAction, LogAction]


@dataclass(frozen=True)
class RetryPolicy:
    """``base_delay`` is in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def delay_for(self, retry_number: int) -> float:
        """Delay before the nth retry (1-based)."""
        return self.base_delay * self.backoff_multiplier ** (retry_number - 1)


@dataclass(frozen=True)
class RateLimit:
    """At most ``max_calls`` firings per ``window_seconds`` fixed window."""

    max_calls: int
    window_seconds: float


@dataclass
class CallbackBinding:
    trigger_event_types: frozenset[EventType]
    action: CallbackAction
    id: str = ""
    name: str = ""
    session_id: str | None = None
    predicate: Callable[[Event], bool] | None = None
    conditions: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    retry_policy: RetryPolicy | None = None
    rate_limit: RateLimit | None = None
    created_at: datetime | None = None
    last_triggered: datetime | None = None
    trigger_count: int = 0
    error_count: int = 0


class CallbackStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass
class CallbackExecution:
    """One firing of a binding, including any retries of it."""

    id: str
    callback_id: str
    event_id: str
    event_type: EventType
    status: CallbackStatus
    started_at: datetime
    attempts: int = 0
    completed_at: datetime | None = None
    result: Any = None
    error: str | None = None
    attempt_times: list[datetime] = field(default_factory=list)
