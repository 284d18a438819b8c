"""Tests for ExecutionScheduler scheduling, ticks and transitions."""

import asyncio

import pytest

from dcaflow.application.artifacts import ArtifactStore
from dcaflow.application.scheduling import CANCELLED_ERROR, ExecutionScheduler
from dcaflow.domain.errors import PermissionDeniedError, ValidationError
from dcaflow.domain.events import EventBus, EventFilter, EventType
from dcaflow.domain.models import ArtifactType, ExecutionStatus, LegStatus

from conftest import FakeClock, FakeSubmitter, make_execution_request, make_legs


@pytest.fixture
def bus(clock: FakeClock) -> EventBus:
    return EventBus(clock=clock)


@pytest.fixture
def scheduler(bus: EventBus, submitter: FakeSubmitter, clock: FakeClock) -> ExecutionScheduler:
    return ExecutionScheduler(bus, submitter, clock=clock)


def _events(bus: EventBus, event_type: EventType):
    return list(reversed(bus.history(EventFilter(types=[event_type]))))


class TestSchedule:
    """Tests for schedule."""

    async def test_schedule_creates_active_execution(
        self, bus: EventBus, scheduler: ExecutionScheduler
    ) -> None:
        execution_id = await scheduler.schedule(make_execution_request())

        execution = scheduler.get(execution_id)
        assert execution_id == "deleg_1"
        assert execution.status == ExecutionStatus.ACTIVE
        assert execution.total_leg_count == 4
        assert all(leg.status == LegStatus.PENDING for leg in execution.legs)
        [started] = _events(bus, EventType.DCA_EXECUTION_STARTED)
        assert started.data["total_legs"] == 4
        assert started.session_id == "session_1"

    async def test_schedule_is_idempotent(
        self, scheduler: ExecutionScheduler, submitter: FakeSubmitter
    ) -> None:
        first = await scheduler.schedule(make_execution_request())
        second = await scheduler.schedule(make_execution_request())

        assert first == second
        assert submitter.permission_checks == 1
        assert len(scheduler.executions()) == 1

    async def test_concurrent_schedule_creates_one_execution(
        self, bus: EventBus, clock: FakeClock
    ) -> None:
        submitter = FakeSubmitter(delay=0.01)
        scheduler = ExecutionScheduler(bus, submitter, clock=clock)

        ids = await asyncio.gather(
            scheduler.schedule(make_execution_request()),
            scheduler.schedule(make_execution_request()),
        )

        assert ids == ["deleg_1", "deleg_1"]
        assert submitter.permission_checks == 1
        assert len(_events(bus, EventType.DCA_EXECUTION_STARTED)) == 1

    async def test_permission_denied(self, bus: EventBus, clock: FakeClock) -> None:
        scheduler = ExecutionScheduler(bus, FakeSubmitter(permitted=False), clock=clock)

        with pytest.raises(PermissionDeniedError):
            await scheduler.schedule(make_execution_request())

        assert scheduler.get("deleg_1") is None

    async def test_budget_mismatch_rejected(self, scheduler: ExecutionScheduler) -> None:
        request = make_execution_request(legs=make_legs([25.0, 25.0]), budget=100.0)

        with pytest.raises(ValidationError):
            await scheduler.schedule(request)

    async def test_legs_sorted_by_index(self, scheduler: ExecutionScheduler) -> None:
        legs = make_legs([50.0, 50.0])
        await scheduler.schedule(make_execution_request(legs=list(reversed(legs))))

        assert [leg.index for leg in scheduler.get("deleg_1").legs] == [1, 2]


class TestTick:
    """Tests for leg execution on tick."""

    async def test_executes_only_due_legs_one_per_tick(
        self,
        bus: EventBus,
        scheduler: ExecutionScheduler,
        submitter: FakeSubmitter,
        clock: FakeClock,
    ) -> None:
        await scheduler.schedule(make_execution_request())

        first = await scheduler.tick()
        again = await scheduler.tick()

        assert first.executed_leg_count == 1
        assert again.executed_leg_count == 0
        assert submitter.submitted == [("deleg_1", 1)]
        execution = scheduler.get("deleg_1")
        assert execution.legs[0].status == LegStatus.COMPLETED
        assert execution.legs[0].tx_ref == "0xtx1"
        assert execution.next_due_at == execution.legs[1].scheduled_time
        [executed] = _events(bus, EventType.DCA_LEG_EXECUTED)
        assert executed.data["leg_index"] == 1

    async def test_overdue_legs_run_one_per_tick(
        self, scheduler: ExecutionScheduler, submitter: FakeSubmitter, clock: FakeClock
    ) -> None:
        await scheduler.schedule(make_execution_request())
        clock.advance(hours=5)

        for _ in range(4):
            await scheduler.tick()

        assert [index for _, index in submitter.submitted] == [1, 2, 3, 4]

    async def test_completion_detected_on_next_tick(
        self, bus: EventBus, scheduler: ExecutionScheduler, clock: FakeClock
    ) -> None:
        await scheduler.schedule(make_execution_request(legs=make_legs([50.0, 50.0])))
        clock.advance(hours=1)
        await scheduler.tick()
        await scheduler.tick()

        assert scheduler.get("deleg_1").status == ExecutionStatus.ACTIVE

        result = await scheduler.tick()

        execution = scheduler.get("deleg_1")
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_leg_count == 2
        assert result.active_execution_count == 0
        [completed] = _events(bus, EventType.DCA_EXECUTION_COMPLETED)
        assert completed.data["tx_refs"] == ["0xtx1", "0xtx2"]
        assert completed.data["total_amount"] == pytest.approx(100.0)

    async def test_leg_failure_fails_execution(
        self, bus: EventBus, clock: FakeClock
    ) -> None:
        submitter = FakeSubmitter(fail_legs={2})
        scheduler = ExecutionScheduler(bus, submitter, clock=clock)
        await scheduler.schedule(make_execution_request())
        clock.advance(hours=5)

        for _ in range(4):
            await scheduler.tick()

        execution = scheduler.get("deleg_1")
        assert execution.status == ExecutionStatus.FAILED
        assert execution.legs[1].status == LegStatus.FAILED
        assert execution.legs[2].status == LegStatus.PENDING
        assert "Leg 2 failed: router reverted" == execution.error
        assert submitter.submitted == [("deleg_1", 1), ("deleg_1", 2)]
        [failed] = _events(bus, EventType.DCA_EXECUTION_FAILED)
        assert failed.data["leg_index"] == 2

    async def test_concurrent_ticks_never_submit_twice(
        self, bus: EventBus, clock: FakeClock
    ) -> None:
        submitter = FakeSubmitter(delay=0.01)
        scheduler = ExecutionScheduler(bus, submitter, clock=clock)
        await scheduler.schedule(make_execution_request())
        clock.advance(hours=5)

        await asyncio.gather(scheduler.tick(), scheduler.tick(), scheduler.tick())

        assert submitter.submitted == [("deleg_1", 1)]

    async def test_submission_timeout_fails_leg(self, bus: EventBus, clock: FakeClock) -> None:
        scheduler = ExecutionScheduler(
            bus, FakeSubmitter(), clock=clock, submission_timeout=0.01
        )
        await scheduler.schedule(make_execution_request())
        scheduler.submitter = FakeSubmitter(delay=1)

        await scheduler.tick()

        execution = scheduler.get("deleg_1")
        assert execution.status == ExecutionStatus.FAILED
        assert "timed out" in execution.legs[0].error

    async def test_execution_report_written(self, bus: EventBus, clock: FakeClock) -> None:
        artifacts = ArtifactStore(clock=clock)
        plan_id = artifacts.create_dca_plan("session_1", {"legs": []})
        scheduler = ExecutionScheduler(bus, FakeSubmitter(), artifacts=artifacts, clock=clock)
        await scheduler.schedule(
            make_execution_request(legs=make_legs([100.0]), plan_artifact_id=plan_id)
        )

        await scheduler.tick()
        await scheduler.tick()

        [report] = artifacts.children(plan_id)
        assert report.type == ArtifactType.EXECUTION_REPORT
        assert report.data["status"] == "completed"


class TestTransitions:
    """Tests for pause, resume and cancel."""

    async def test_paused_execution_not_ticked(
        self,
        bus: EventBus,
        scheduler: ExecutionScheduler,
        submitter: FakeSubmitter,
    ) -> None:
        await scheduler.schedule(make_execution_request())

        assert await scheduler.pause("deleg_1")
        assert not await scheduler.pause("deleg_1")
        await scheduler.tick()
        assert submitter.submitted == []

        assert await scheduler.resume("deleg_1")
        assert not await scheduler.resume("deleg_1")
        await scheduler.tick()
        assert submitter.submitted == [("deleg_1", 1)]
        assert _events(bus, EventType.DCA_EXECUTION_PAUSED)
        assert _events(bus, EventType.DCA_EXECUTION_RESUMED)

    async def test_cancel_from_paused(self, scheduler: ExecutionScheduler) -> None:
        await scheduler.schedule(make_execution_request())
        await scheduler.pause("deleg_1")

        assert await scheduler.cancel("deleg_1")

        execution = scheduler.get("deleg_1")
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == CANCELLED_ERROR
        assert not await scheduler.cancel("deleg_1")
        assert not await scheduler.resume("deleg_1")

    async def test_unknown_execution(self, scheduler: ExecutionScheduler) -> None:
        assert not await scheduler.pause("missing")
        assert not await scheduler.cancel("missing")
        assert scheduler.get("missing") is None


class TestDriver:
    async def test_start_and_stop(self, scheduler: ExecutionScheduler) -> None:
        scheduler.start()
        assert scheduler.running
        assert scheduler.stats().running

        await scheduler.stop()
        assert not scheduler.running

    async def test_stats(self, scheduler: ExecutionScheduler) -> None:
        await scheduler.schedule(make_execution_request())
        await scheduler.tick()

        stats = scheduler.stats()

        assert stats.total_executions == 1
        assert stats.by_status == {"active": 1}
        assert stats.legs_completed == 1

    async def test_stop_lets_in_flight_leg_finish(self, bus: EventBus, clock: FakeClock) -> None:
        """Stopping mid-submission resolves the leg instead of abandoning it."""
        submitter = FakeSubmitter(delay=0.2)
        scheduler = ExecutionScheduler(bus, submitter, tick_interval=0.01, clock=clock)
        await scheduler.schedule(make_execution_request())

        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        execution = scheduler.get("deleg_1")
        assert execution.legs[0].status == LegStatus.COMPLETED
        assert execution.completed_leg_count == 1
        assert scheduler.stats().in_flight == 0

        clock.advance(hours=5)
        for _ in range(4):
            await scheduler.tick()

        assert [index for _, index in submitter.submitted] == [1, 2, 3, 4]
        assert scheduler.get("deleg_1").status == ExecutionStatus.COMPLETED

    async def test_unresolved_leg_blocks_later_legs(
        self, scheduler: ExecutionScheduler, submitter: FakeSubmitter, clock: FakeClock
    ) -> None:
        await scheduler.schedule(make_execution_request())
        scheduler._executions["deleg_1"].legs[0].status = LegStatus.EXECUTING
        clock.advance(hours=5)

        result = await scheduler.tick()

        assert result.executed_leg_count == 0
        assert submitter.submitted == []
        assert scheduler.get("deleg_1").status == ExecutionStatus.ACTIVE
