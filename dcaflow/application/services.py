"""Composition root: builds every engine service from one ``DcaflowConfig``."""

import logging
from dataclasses import dataclass, field
from typing import Any

from dcaflow.application.artifacts import ArtifactStore
from dcaflow.application.callbacks import CallbackDispatcher
from dcaflow.application.config_models import DcaflowConfig
from dcaflow.application.metrics import MetricsCollector
from dcaflow.application.periodic import PeriodicTask
from dcaflow.application.risk_monitor import RiskMonitor
from dcaflow.application.scheduling import ExecutionScheduler
from dcaflow.application.sessions import SessionStateStore
from dcaflow.application.streaming import EventStreamManager
from dcaflow.application.workflow_orchestrator import WorkflowOrchestrator
from dcaflow.domain.events import EventBus
from dcaflow.domain.models import (
    ExecutionRequest,
    ExecutionStatus,
    OrchestrationResult,
)
from dcaflow.domain.providers import CollaboratorFactory, CollaboratorKind

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: DcaflowConfig
    bus: EventBus
    artifacts: ArtifactStore
    dispatcher: CallbackDispatcher
    metrics: MetricsCollector
    orchestrator: WorkflowOrchestrator
    scheduler: ExecutionScheduler
    risk_monitor: RiskMonitor
    streams: EventStreamManager
    sessions: SessionStateStore
    _tasks: list[PeriodicTask] = field(default_factory=list)

    async def start(self) -> None:
        """Start the background sweeps and, when configured, the scheduler."""
        self._tasks = [
            PeriodicTask("event-cleanup", self.config.events.cleanup_interval, self.bus.cleanup),
            PeriodicTask(
                "artifact-sweep", self.config.artifacts.cleanup_interval, self.artifacts.sweep_expired
            ),
            PeriodicTask(
                "session-cleanup", self.config.sessions.cleanup_interval, self.sessions.cleanup
            ),
        ]
        if self.config.metrics.enable_system_metrics:
            self._tasks.append(
                PeriodicTask(
                    "system-metrics",
                    self.config.metrics.collection_interval,
                    self.metrics.collect_system_metrics,
                )
            )
        for task in self._tasks:
            task.start()
        if self.config.scheduler.auto_start:
            self.scheduler.start()
        logger.info("Engine started with %d background tasks", len(self._tasks))

    async def aclose(self) -> None:
        await self.scheduler.stop()
        for task in self._tasks:
            await task.stop()
        self._tasks = []
        self.streams.close_all()
        self.sessions.detach()
        await self.dispatcher.aclose()
        self.metrics.close()
        logger.info("Engine stopped")

    async def schedule_plan(
        self,
        result: OrchestrationResult,
        *,
        delegation_id: str,
        delegator: str,
        delegate: str,
        router: str,
        permission_context: dict[str, Any] | None = None,
    ) -> str:
        """Hand an orchestrated plan to the scheduler under a delegation."""
        plan = result.market_analysis
        request = ExecutionRequest(
            delegation_id=delegation_id,
            delegator=delegator,
            delegate=delegate,
            router=router,
            token_in=plan.token_in,
            token_out=plan.token_out,
            budget=sum(leg.amount for leg in result.dca_plan),
            legs=result.dca_plan,
            permission_context=permission_context or {},
            session_id=result.session_id,
            plan_artifact_id=result.plan_artifact_id,
        )
        return await self.scheduler.schedule(request)

    def system_snapshot(self) -> dict[str, dict[str, float]]:
        """Partial system metrics contributed by the services other than the bus."""
        orchestrator = self.orchestrator.stats()
        scheduler = self.scheduler.stats()
        artifacts = self.artifacts.stats()
        dispatcher = self.dispatcher.stats()
        active_sessions = {
            e.session_id
            for e in self.scheduler.executions(ExecutionStatus.ACTIVE)
            if e.session_id
        }
        active_sessions.update(o["session_id"] for o in self.orchestrator.active_orchestrations())
        return {
            "system": {
                "total_sessions": float(len(self.sessions)),
                "active_sessions": float(len(active_sessions)),
                "active_executions": float(scheduler.by_status.get(ExecutionStatus.ACTIVE.value, 0)),
            },
            "coordination": {
                "orchestrations": float(orchestrator.total_orchestrations),
                "successful_orchestrations": float(orchestrator.completed_orchestrations),
                "average_orchestration_time": orchestrator.average_duration_ms,
                "callbacks_fired": float(dispatcher["total_triggers"]),
            },
            "resources": {
                "event_history_size": float(len(self.bus.history())),
                "artifact_count": float(artifacts.total_artifacts),
            },
        }


def _collaborator(config: DcaflowConfig, kind: CollaboratorKind) -> Any:
    key = getattr(config.providers, kind.value)
    return CollaboratorFactory.create(kind, key, config.providers.options.get(kind.value))


def build_services(config: DcaflowConfig | None = None) -> Services:
    """Wire the engine. Must be called inside a running event loop only for ``start()``."""
    config = config or DcaflowConfig()

    bus = EventBus(max_history=config.events.max_history, max_age_seconds=config.events.max_age)
    artifacts = ArtifactStore(max_artifacts=config.artifacts.max_artifacts)
    artifacts.attach(bus)
    sessions = SessionStateStore(
        bus,
        session_timeout=config.sessions.timeout,
        max_snapshots=config.sessions.max_snapshots,
    )
    sessions.attach()

    dispatcher = CallbackDispatcher(
        bus,
        max_history=config.callbacks.max_execution_history,
        default_timeout=config.callbacks.default_webhook_timeout,
    )
    if config.callbacks.register_defaults:
        dispatcher.register_defaults()

    market_data = _collaborator(config, CollaboratorKind.MARKET_DATA)
    risk_scorer = _collaborator(config, CollaboratorKind.RISK_SCORER)
    planner = _collaborator(config, CollaboratorKind.PLANNER)
    submitter = _collaborator(config, CollaboratorKind.SUBMITTER)

    metrics = MetricsCollector(
        bus,
        max_history=config.metrics.max_history,
        max_alerts=config.metrics.max_alerts,
        default_thresholds=config.metrics.default_thresholds,
    )
    orchestrator = WorkflowOrchestrator(
        bus=bus,
        artifacts=artifacts,
        market_data=market_data,
        risk_scorer=risk_scorer,
        planner=planner,
        metrics=metrics,
        sessions=sessions,
        sizing=config.position_sizing,
        risk_thresholds=config.risk,
        collaborator_timeout=config.api.timeout,
        collaborator_retries=config.api.retries,
    )
    scheduler = ExecutionScheduler(
        bus,
        submitter,
        artifacts=artifacts,
        tick_interval=config.scheduler.tick_interval,
        idle_log_threshold=config.scheduler.idle_log_threshold,
        submission_timeout=config.scheduler.submission_timeout,
    )
    services = Services(
        config=config,
        bus=bus,
        artifacts=artifacts,
        dispatcher=dispatcher,
        metrics=metrics,
        orchestrator=orchestrator,
        scheduler=scheduler,
        risk_monitor=RiskMonitor(bus, market_data, risk_scorer, config.risk),
        streams=EventStreamManager(
            bus,
            heartbeat_interval=config.streaming.heartbeat_interval,
            idle_timeout=config.streaming.idle_timeout,
        ),
        sessions=sessions,
    )
    metrics.snapshot_provider = services.system_snapshot
    return services
