"""Trigger -> action bindings on bus events.

The dispatcher holds a single bus subscription covering every event type and
evaluates each enabled binding against each event. A matched binding runs its
action once inside the publish; if that fails and the binding has a retry
policy, retries run in the background after
``base_delay * backoff_multiplier ** (n - 1)`` seconds. When retries are
exhausted one ``agent_error`` event is published.
"""

import asyncio
import inspect
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable

import httpx

from dcaflow.domain.constants import (
    DEFAULT_MAX_CALLBACK_HISTORY,
    DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
)
from dcaflow.domain.events.bus import EventBus
from dcaflow.domain.events.event import Event
from dcaflow.domain.events.event_types import ALL_EVENT_TYPES, EventType
from dcaflow.domain.models.callback import (
    CallbackAction,
    CallbackBinding,
    CallbackExecution,
    CallbackStatus,
    FunctionAction,
    LogAction,
    RateLimit,
    RetryPolicy,
    WebhookAction,
)

logger = logging.getLogger(__name__)

SOURCE = "callback_dispatcher"

_MISSING = object()

_UPDATABLE_FIELDS = frozenset(
    {"name", "enabled", "conditions", "predicate", "retry_policy", "rate_limit"}
)


@dataclass
class _RateWindow:
    calls: int
    reset_at: datetime


def _lookup(data: dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


class CallbackDispatcher:
    # Maps action variant to handler method name.
    _ACTION_HANDLERS: dict[type, str] = {
        WebhookAction: "_run_webhook",
        FunctionAction: "_run_function",
        LogAction: "_run_log",
    }

    def __init__(
        self,
        bus: EventBus,
        *,
        http_client: httpx.AsyncClient | None = None,
        max_history: int = DEFAULT_MAX_CALLBACK_HISTORY,
        default_timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.bus = bus
        self.max_history = max_history
        self.default_timeout = default_timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._bindings: dict[str, CallbackBinding] = {}
        self._executions: OrderedDict[str, CallbackExecution] = OrderedDict()
        self._rate_windows: dict[str, _RateWindow] = {}
        self._pending: set[asyncio.Task] = set()
        self._subscription_id: str | None = bus.subscribe(ALL_EVENT_TYPES, self._on_event)

    # ========================================================================
    # Registration
    # ========================================================================

    def register(self, binding: CallbackBinding) -> str:
        if not binding.trigger_event_types:
            raise ValueError("A callback needs at least one trigger event type")
        if type(binding.action) not in self._ACTION_HANDLERS:
            raise TypeError(f"Unsupported callback action: {binding.action!r}")
        # Stored copy, never the caller's object.
        binding = replace(
            binding,
            trigger_event_types=frozenset(EventType(t) for t in binding.trigger_event_types),
            id=binding.id or f"cb_{uuid.uuid4().hex[:12]}",
            created_at=binding.created_at or self._clock(),
            conditions=dict(binding.conditions),
        )
        self._bindings[binding.id] = binding
        logger.info(
            "Registered %s callback %s for %s",
            binding.action.kind.value,
            binding.id,
            sorted(t.value for t in binding.trigger_event_types),
        )
        return binding.id

    def unregister(self, callback_id: str) -> bool:
        self._rate_windows.pop(callback_id, None)
        return self._bindings.pop(callback_id, None) is not None

    def update(self, callback_id: str, **changes: Any) -> bool:
        binding = self._bindings.get(callback_id)
        if binding is None:
            return False
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update callback fields: {sorted(unknown)}")
        for key, value in changes.items():
            setattr(binding, key, value)
        if "rate_limit" in changes:
            self._rate_windows.pop(callback_id, None)
        return True

    def enable(self, callback_id: str) -> bool:
        return self.update(callback_id, enabled=True)

    def disable(self, callback_id: str) -> bool:
        return self.update(callback_id, enabled=False)

    def get(self, callback_id: str) -> CallbackBinding | None:
        binding = self._bindings.get(callback_id)
        return replace(binding) if binding else None

    def bindings(self, session_id: str | None = None) -> list[CallbackBinding]:
        return [
            replace(b)
            for b in self._bindings.values()
            if session_id is None or b.session_id == session_id
        ]

    def executions(
        self, callback_id: str | None = None, limit: int | None = None
    ) -> list[CallbackExecution]:
        """Return execution records, newest first."""
        records = [
            replace(e)
            for e in reversed(self._executions.values())
            if callback_id is None or e.callback_id == callback_id
        ]
        return records[:limit] if limit is not None else records

    def stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for execution in self._executions.values():
            by_status[execution.status.value] = by_status.get(execution.status.value, 0) + 1
        finished = by_status.get("completed", 0) + by_status.get("failed", 0)
        return {
            "total_callbacks": len(self._bindings),
            "enabled_callbacks": sum(1 for b in self._bindings.values() if b.enabled),
            "total_triggers": sum(b.trigger_count for b in self._bindings.values()),
            "total_errors": sum(b.error_count for b in self._bindings.values()),
            "executions_by_status": by_status,
            "success_rate": by_status.get("completed", 0) / finished if finished else 1.0,
        }

    # ========================================================================
    # Convenience registrations
    # ========================================================================

    def register_defaults(self) -> list[str]:
        """Log bindings for completed executions, high risk, and agent errors."""
        return [
            self.register(
                CallbackBinding(
                    name="execution-completed-log",
                    trigger_event_types=frozenset({EventType.DCA_EXECUTION_COMPLETED}),
                    action=LogAction(level=logging.INFO, message="DCA execution completed"),
                )
            ),
            self.register(
                CallbackBinding(
                    name="high-risk-log",
                    trigger_event_types=frozenset({EventType.RISK_ASSESSMENT_CHANGED}),
                    conditions={"new_risk": "high"},
                    action=LogAction(level=logging.WARNING, message="High risk detected"),
                )
            ),
            self.register(
                CallbackBinding(
                    name="agent-error-log",
                    trigger_event_types=frozenset({EventType.AGENT_ERROR}),
                    action=LogAction(level=logging.ERROR, message="Agent error"),
                )
            ),
        ]

    def register_completion_webhook(
        self, session_id: str, url: str, headers: dict[str, str] | None = None
    ) -> str:
        return self.register(
            CallbackBinding(
                name="execution-completed-webhook",
                trigger_event_types=frozenset({EventType.DCA_EXECUTION_COMPLETED}),
                session_id=session_id,
                action=WebhookAction(
                    url=url, headers=dict(headers or {}), timeout=self.default_timeout
                ),
                retry_policy=RetryPolicy(max_retries=3, base_delay=1.0, backoff_multiplier=2.0),
            )
        )

    def register_risk_alert(
        self,
        session_id: str,
        risk_level: str,
        handler: Callable[[Event], Any],
    ) -> str:
        return self.register(
            CallbackBinding(
                name=f"risk-alert-{risk_level}",
                trigger_event_types=frozenset({EventType.RISK_ASSESSMENT_CHANGED}),
                session_id=session_id,
                conditions={"new_risk": risk_level},
                action=FunctionAction(handler=handler),
            )
        )

    def register_market_change(
        self,
        token: str,
        change_threshold: float,
        handler: Callable[[Event], Any],
    ) -> str:
        def significant(event: Event) -> bool:
            change = event.data.get("change_percent_24h", 0.0)
            return event.data.get("token") == token and abs(change) >= change_threshold

        return self.register(
            CallbackBinding(
                name=f"market-change-{token}",
                trigger_event_types=frozenset({EventType.MARKET_DATA_UPDATED}),
                predicate=significant,
                action=FunctionAction(handler=handler),
                rate_limit=RateLimit(max_calls=10, window_seconds=60),
            )
        )

    # ========================================================================
    # Dispatch
    # ========================================================================

    async def _on_event(self, event: Event) -> None:
        matched = [b for b in list(self._bindings.values()) if self._matches(b, event)]
        if matched:
            await asyncio.gather(*(self._fire(b, event) for b in matched))

    def _matches(self, binding: CallbackBinding, event: Event) -> bool:
        if not binding.enabled or event.type not in binding.trigger_event_types:
            return False
        if binding.session_id is not None and event.session_id != binding.session_id:
            return False
        for path, expected in binding.conditions.items():
            if _lookup(event.data, path) != expected:
                return False
        if binding.predicate is not None:
            try:
                return bool(binding.predicate(event))
            except Exception as e:
                logger.warning("Predicate for callback %s failed: %s", binding.id, e)
                return False
        return True

    def _allow(self, binding: CallbackBinding) -> bool:
        limit = binding.rate_limit
        if limit is None:
            return True
        now = self._clock()
        window = self._rate_windows.get(binding.id)
        if window is None or now >= window.reset_at:
            window = _RateWindow(calls=0, reset_at=now + timedelta(seconds=limit.window_seconds))
            self._rate_windows[binding.id] = window
        if window.calls >= limit.max_calls:
            return False
        window.calls += 1
        return True

    async def _fire(self, binding: CallbackBinding, event: Event) -> None:
        if not self._allow(binding):
            logger.debug("Callback %s rate limited", binding.id)
            return
        execution = CallbackExecution(
            id=f"cbx_{uuid.uuid4().hex[:12]}",
            callback_id=binding.id,
            event_id=event.id,
            event_type=event.type,
            status=CallbackStatus.EXECUTING,
            started_at=self._clock(),
        )
        self._record(execution)
        await self._attempt(binding, event, execution)

    async def _attempt(
        self, binding: CallbackBinding, event: Event, execution: CallbackExecution
    ) -> None:
        now = self._clock()
        execution.attempts += 1
        execution.attempt_times.append(now)
        execution.status = CallbackStatus.EXECUTING
        binding.last_triggered = now
        try:
            handler = getattr(self, self._ACTION_HANDLERS[type(binding.action)])
            result = await handler(binding.action, binding, event)
        except Exception as e:
            binding.error_count += 1
            execution.error = str(e) or type(e).__name__
            await self._attempt_failed(binding, event, execution)
            return

        binding.trigger_count += 1
        execution.status = CallbackStatus.COMPLETED
        execution.result = result
        execution.error = None
        execution.completed_at = self._clock()

    async def _attempt_failed(
        self, binding: CallbackBinding, event: Event, execution: CallbackExecution
    ) -> None:
        policy = binding.retry_policy
        retries_done = execution.attempts - 1
        if policy is not None and retries_done < policy.max_retries:
            delay = policy.delay_for(retries_done + 1)
            execution.status = CallbackStatus.RETRYING
            logger.warning(
                "Callback %s failed (%s); retry %d/%d in %.2fs",
                binding.id,
                execution.error,
                retries_done + 1,
                policy.max_retries,
                delay,
            )
            self._spawn(self._retry_later(binding, event, execution, delay))
            return

        execution.status = CallbackStatus.FAILED
        execution.completed_at = self._clock()
        if event.type == EventType.AGENT_ERROR:
            logger.error(
                "Callback %s failed on agent_error event %s: %s",
                binding.id,
                event.id,
                execution.error,
            )
            return
        logger.error(
            "Callback %s failed after %d attempts: %s",
            binding.id,
            execution.attempts,
            execution.error,
        )
        await self.bus.agent_error(
            SOURCE,
            f"Callback {binding.id} failed after {execution.attempts} attempts: {execution.error}",
            session_id=event.session_id,
            context={
                "callback_id": binding.id,
                "execution_id": execution.id,
                "event_id": event.id,
                "attempts": execution.attempts,
            },
        )

    async def _retry_later(
        self,
        binding: CallbackBinding,
        event: Event,
        execution: CallbackExecution,
        delay: float,
    ) -> None:
        await self._sleep(delay)
        if self._bindings.get(binding.id) is not binding or not binding.enabled:
            execution.status = CallbackStatus.FAILED
            execution.error = "Callback removed or disabled before retry"
            execution.completed_at = self._clock()
            return
        await self._attempt(binding, event, execution)

    # ========================================================================
    # Action handlers
    # ========================================================================

    async def _run_webhook(
        self, action: WebhookAction, binding: CallbackBinding, event: Event
    ) -> dict[str, Any]:
        payload = {
            "event": event.model_dump(mode="json"),
            "callback": {
                "id": binding.id,
                "kind": action.kind.value,
                "session_id": binding.session_id,
            },
            "timestamp": self._clock().isoformat(),
        }
        response = await self._http().request(
            action.method,
            action.url,
            json=payload,
            headers={"Content-Type": "application/json", **action.headers},
            timeout=action.timeout,
        )
        response.raise_for_status()
        return {"status_code": response.status_code}

    async def _run_function(
        self, action: FunctionAction, binding: CallbackBinding, event: Event
    ) -> Any:
        result = action.handler(event)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _run_log(
        self, action: LogAction, binding: CallbackBinding, event: Event
    ) -> None:
        logger.log(
            action.level,
            "[Callback %s] %s: %s",
            binding.name or binding.id,
            event.type.value,
            action.message or event.data,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def drain(self) -> None:
        """Wait until no retries are pending."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        if self._subscription_id is not None:
            self.bus.unsubscribe(self._subscription_id)
            self._subscription_id = None
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.default_timeout)
        return self._client

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _record(self, execution: CallbackExecution) -> None:
        self._executions[execution.id] = execution
        while len(self._executions) > self.max_history:
            self._executions.popitem(last=False)


def parse_event_types(types: Iterable[str | EventType]) -> frozenset[EventType]:
    return frozenset(EventType(t) for t in types)
