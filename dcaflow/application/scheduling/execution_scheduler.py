"""Leg-by-leg execution of accepted plans.

State machine per execution::

    active -> completed | failed
    active <-> paused
    paused -> failed            (cancel)

On each tick every active execution is examined in enumeration order. The
earliest pending leg whose time has come is marked ``executing`` before the
submission call is awaited, so no leg is ever submitted twice. A failed leg
fails the whole execution.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from dcaflow.application.artifacts.artifact_store import ArtifactStore
from dcaflow.application.periodic import PeriodicTask
from dcaflow.domain.constants import (
    DEFAULT_IDLE_LOG_THRESHOLD,
    DEFAULT_SUBMISSION_TIMEOUT_SECONDS,
    DEFAULT_TICK_INTERVAL_SECONDS,
)
from dcaflow.domain.errors import ArtifactError, PermissionDeniedError
from dcaflow.domain.events.bus import EventBus
from dcaflow.domain.events.event_types import EventType
from dcaflow.domain.models.execution import (
    ExecutionRequest,
    ExecutionStatus,
    Leg,
    LegStatus,
    ScheduledExecution,
    SubmissionResult,
    TickResult,
)
from dcaflow.domain.models.plan import validate_legs
from dcaflow.domain.providers.submitter import Submitter

logger = logging.getLogger(__name__)

SOURCE = "execution_scheduler"

CANCELLED_ERROR = "Cancelled by user"


@dataclass
class SchedulerStats:
    total_executions: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    legs_completed: int = 0
    legs_failed: int = 0
    in_flight: int = 0
    running: bool = False


class ExecutionScheduler:
    def __init__(
        self,
        bus: EventBus,
        submitter: Submitter,
        *,
        artifacts: ArtifactStore | None = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL_SECONDS,
        idle_log_threshold: int = DEFAULT_IDLE_LOG_THRESHOLD,
        submission_timeout: float = DEFAULT_SUBMISSION_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.bus = bus
        self.submitter = submitter
        self.artifacts = artifacts
        self.idle_log_threshold = idle_log_threshold
        self.submission_timeout = submission_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._executions: dict[str, ScheduledExecution] = {}
        self._scheduling: dict[str, asyncio.Future] = {}
        self._in_flight: set[str] = set()
        self._idle_ticks = 0
        self._driver = PeriodicTask("execution-scheduler", tick_interval, self.tick)

    # ========================================================================
    # Scheduling
    # ========================================================================

    async def schedule(self, request: ExecutionRequest) -> str:
        """Accept a plan for execution. Returns the execution id (the delegation id).

        Scheduling the same delegation id again returns the existing id.

        Raises:
            ValidationError: If the legs are empty, out of order, or do not sum
                to the budget
            PermissionDeniedError: If the submitter rejects the delegation
        """
        execution_id = request.delegation_id
        if execution_id in self._executions:
            logger.info("Execution %s already scheduled", execution_id)
            return execution_id
        pending = self._scheduling.get(execution_id)
        if pending is not None:
            return await asyncio.shield(pending)

        validate_legs(request.legs, request.budget)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._scheduling[execution_id] = future
        try:
            await self._check_permission(request)
            execution = self._create(request)
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a lone caller doesn't log "exception never retrieved".
            future.exception()
            raise
        finally:
            self._scheduling.pop(execution_id, None)
        future.set_result(execution_id)

        logger.info(
            "Scheduled execution %s: %d legs, first due %s",
            execution_id,
            execution.total_leg_count,
            execution.next_due_at,
        )
        await self.bus.emit(
            EventType.DCA_EXECUTION_STARTED,
            source=SOURCE,
            session_id=request.session_id,
            data={
                "execution_id": execution_id,
                "total_legs": execution.total_leg_count,
                "budget": request.budget,
                "token_in": request.token_in,
                "token_out": request.token_out,
                "next_due_at": execution.next_due_at.isoformat() if execution.next_due_at else None,
            },
        )
        return execution_id

    async def _check_permission(self, request: ExecutionRequest) -> None:
        try:
            permitted = await asyncio.wait_for(
                self.submitter.validate_permission(request), timeout=self.submission_timeout
            )
        except asyncio.TimeoutError as e:
            raise PermissionDeniedError(
                f"Permission check timed out for delegation {request.delegation_id}"
            ) from e
        if not permitted:
            logger.warning("Permission denied for delegation %s", request.delegation_id)
            raise PermissionDeniedError(
                f"Delegation {request.delegation_id} does not permit execution"
            )

    def _create(self, request: ExecutionRequest) -> ScheduledExecution:
        now = self._clock()
        legs = [Leg(**leg.model_dump()) for leg in sorted(request.legs, key=lambda l: l.index)]
        execution = ScheduledExecution(
            id=request.delegation_id,
            request=request,
            legs=legs,
            created_at=now,
            updated_at=now,
            total_leg_count=len(legs),
            next_due_at=legs[0].scheduled_time,
        )
        self._executions[execution.id] = execution
        return execution

    # ========================================================================
    # Tick
    # ========================================================================

    async def tick(self) -> TickResult:
        """Execute at most one due leg per active execution."""
        executed = 0
        for execution in list(self._executions.values()):
            if execution.status != ExecutionStatus.ACTIVE or execution.id in self._in_flight:
                continue
            leg = self._next_due_leg(execution, self._clock())
            if leg is None:
                if all(l.status == LegStatus.COMPLETED for l in execution.legs):
                    await self._complete(execution)
                continue
            if await self._execute_leg(execution, leg):
                executed += 1

        active = sum(1 for e in self._executions.values() if e.status == ExecutionStatus.ACTIVE)
        self._note_idle(executed, active)
        return TickResult(executed_leg_count=executed, active_execution_count=active)

    def _next_due_leg(self, execution: ScheduledExecution, now: datetime) -> Leg | None:
        for leg in execution.legs:
            # An unresolved leg blocks every later leg.
            if leg.status == LegStatus.EXECUTING:
                return None
            if leg.status == LegStatus.PENDING:
                return leg if leg.scheduled_time <= now else None
        return None

    async def _execute_leg(self, execution: ScheduledExecution, leg: Leg) -> bool:
        leg.status = LegStatus.EXECUTING
        execution.updated_at = self._clock()
        self._in_flight.add(execution.id)
        logger.info("Executing leg %d of %s", leg.index, execution.id)
        try:
            result = await asyncio.wait_for(
                self.submitter.submit(execution.request, leg.model_copy()),
                timeout=self.submission_timeout,
            )
        except asyncio.TimeoutError:
            result = SubmissionResult(
                success=False, error=f"Submission timed out after {self.submission_timeout}s"
            )
        except Exception as e:
            result = SubmissionResult(success=False, error=str(e) or type(e).__name__)
        finally:
            self._in_flight.discard(execution.id)

        now = self._clock()
        leg.executed_at = now
        execution.updated_at = now
        if not result.success:
            leg.status = LegStatus.FAILED
            leg.error = result.error or "Submission failed"
            logger.error("Leg %d of %s failed: %s", leg.index, execution.id, leg.error)
            if not execution.is_terminal:
                await self._fail(execution, f"Leg {leg.index} failed: {leg.error}", leg=leg)
            return False

        leg.status = LegStatus.COMPLETED
        leg.tx_ref = result.tx_ref
        execution.completed_leg_count += 1
        execution.next_due_at = next(
            (l.scheduled_time for l in execution.legs if l.status == LegStatus.PENDING), None
        )
        await self.bus.emit(
            EventType.DCA_LEG_EXECUTED,
            source=SOURCE,
            session_id=execution.session_id,
            data={
                "execution_id": execution.id,
                "leg_index": leg.index,
                "amount": leg.amount,
                "tx_ref": leg.tx_ref,
                "completed_legs": execution.completed_leg_count,
                "total_legs": execution.total_leg_count,
            },
        )
        return True

    def _note_idle(self, executed: int, active: int) -> None:
        if executed:
            self._idle_ticks = 0
            return
        self._idle_ticks += 1
        if self._idle_ticks % self.idle_log_threshold == 0:
            logger.info(
                "Scheduler idle for %d ticks (%d active executions)", self._idle_ticks, active
            )

    # ========================================================================
    # Transitions
    # ========================================================================

    async def pause(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.ACTIVE:
            return False
        execution.status = ExecutionStatus.PAUSED
        execution.updated_at = self._clock()
        logger.info("Paused execution %s", execution_id)
        await self._emit_transition(EventType.DCA_EXECUTION_PAUSED, execution)
        return True

    async def resume(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.PAUSED:
            return False
        execution.status = ExecutionStatus.ACTIVE
        execution.updated_at = self._clock()
        logger.info("Resumed execution %s", execution_id)
        await self._emit_transition(EventType.DCA_EXECUTION_RESUMED, execution)
        return True

    async def cancel(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status not in (
            ExecutionStatus.ACTIVE,
            ExecutionStatus.PAUSED,
        ):
            return False
        logger.info("Cancelling execution %s", execution_id)
        await self._fail(execution, CANCELLED_ERROR)
        return True

    async def _complete(self, execution: ScheduledExecution) -> None:
        execution.status = ExecutionStatus.COMPLETED
        execution.next_due_at = None
        execution.updated_at = self._clock()
        logger.info("Execution %s completed", execution.id)
        await self._emit_transition(
            EventType.DCA_EXECUTION_COMPLETED,
            execution,
            total_amount=sum(l.amount for l in execution.legs),
            tx_refs=[l.tx_ref for l in execution.legs],
        )
        self._write_report(execution)

    async def _fail(
        self, execution: ScheduledExecution, error: str, *, leg: Leg | None = None
    ) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.error = error
        execution.next_due_at = None
        execution.updated_at = self._clock()
        await self._emit_transition(
            EventType.DCA_EXECUTION_FAILED,
            execution,
            error=error,
            leg_index=leg.index if leg else None,
        )
        self._write_report(execution)

    async def _emit_transition(
        self, event_type: EventType, execution: ScheduledExecution, **extra: Any
    ) -> None:
        await self.bus.emit(
            event_type,
            source=SOURCE,
            session_id=execution.session_id,
            data={
                "execution_id": execution.id,
                "status": execution.status.value,
                "completed_legs": execution.completed_leg_count,
                "total_legs": execution.total_leg_count,
                **extra,
            },
        )

    def _write_report(self, execution: ScheduledExecution) -> None:
        plan_id = execution.request.plan_artifact_id
        if self.artifacts is None or plan_id is None or execution.session_id is None:
            return
        report = {
            "execution_id": execution.id,
            "status": execution.status.value,
            "completed_legs": execution.completed_leg_count,
            "total_legs": execution.total_leg_count,
            "error": execution.error,
            "legs": [l.model_dump(mode="json") for l in execution.legs],
        }
        try:
            self.artifacts.create_execution_report(
                execution.session_id, report, parent_plan_id=plan_id
            )
        except ArtifactError as e:
            logger.warning("Could not store execution report for %s: %s", execution.id, e)

    # ========================================================================
    # Driver
    # ========================================================================

    @property
    def running(self) -> bool:
        return self._driver.running

    def start(self) -> None:
        self._driver.start()
        logger.info("Scheduler started (tick every %ss)", self._driver.interval)

    async def stop(self) -> None:
        await self._driver.stop()
        logger.info("Scheduler stopped")

    # ========================================================================
    # Queries
    # ========================================================================

    def get(self, execution_id: str) -> ScheduledExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    def executions(self, status: ExecutionStatus | None = None) -> list[ScheduledExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if status is None or e.status == status
        ]

    def stats(self) -> SchedulerStats:
        stats = SchedulerStats(
            total_executions=len(self._executions),
            in_flight=len(self._in_flight),
            running=self.running,
        )
        for execution in self._executions.values():
            key = execution.status.value
            stats.by_status[key] = stats.by_status.get(key, 0) + 1
            for leg in execution.legs:
                if leg.status == LegStatus.COMPLETED:
                    stats.legs_completed += 1
                elif leg.status == LegStatus.FAILED:
                    stats.legs_failed += 1
        return stats
