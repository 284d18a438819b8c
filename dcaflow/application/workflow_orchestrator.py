"""Dependency-ordered planning workflow.

Each run walks a fixed DAG of steps in declaration order:

    market_analysis
    risk_assessment        <- market_analysis
    dca_plan_generation    <- market_analysis, risk_assessment
    plan_validation        <- dca_plan_generation
    final_optimization     <- plan_validation

A step runs only when every dependency completed; otherwise it is skipped.
Failure of one of the first three steps aborts the run with an
``OrchestrationError``. Validation and optimization failures only add a
warning and the run returns the last good plan.
"""

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from dcaflow.application.artifacts.artifact_store import ArtifactStore
from dcaflow.application.config_models import PositionSizingConfig, RiskConfig
from dcaflow.application.metrics.metrics_collector import MetricsCollector
from dcaflow.application.sessions.session_state import SessionStateStore
from dcaflow.domain.analysis.market_analysis import analyze_market
from dcaflow.domain.constants import OPTIMIZED_MAX_LEGS, OPTIMIZED_MIN_INTERVAL_MINUTES
from dcaflow.domain.errors import CollaboratorError, OrchestrationError
from dcaflow.domain.events.bus import EventBus
from dcaflow.domain.events.event_types import EventType
from dcaflow.domain.models.artifact import ArtifactMetadata, ArtifactType
from dcaflow.domain.models.market import MarketAnalysis
from dcaflow.domain.models.metrics import (
    AgentMetrics,
    BusinessMetrics,
    PerformanceMetrics,
    QualityMetrics,
)
from dcaflow.domain.models.plan import PlanProposal, PlanRequest, validate_legs
from dcaflow.domain.models.risk import PlanValidation, RiskAssessment, RiskRequest
from dcaflow.domain.models.workflow import (
    OrchestrationRequest,
    OrchestrationResult,
    StepId,
    StepStatus,
    ValidationResults,
    WorkflowStep,
)
from dcaflow.domain.providers.market_data_provider import MarketDataProvider
from dcaflow.domain.providers.planner import Planner
from dcaflow.domain.providers.risk_scorer import RiskScorer

logger = logging.getLogger(__name__)

SOURCE = "workflow_orchestrator"

T = TypeVar("T")

# Step declarations in execution order: (id, name, collaborator, dependencies, critical)
_STEP_DECLARATIONS: tuple[tuple[StepId, str, str, tuple[StepId, ...], bool], ...] = (
    (StepId.MARKET_ANALYSIS, "Market Analysis", "market_data", (), True),
    (
        StepId.RISK_ASSESSMENT,
        "Risk Assessment",
        "risk_scorer",
        (StepId.MARKET_ANALYSIS,),
        True,
    ),
    (
        StepId.PLAN_GENERATION,
        "DCA Plan Generation",
        "planner",
        (StepId.MARKET_ANALYSIS, StepId.RISK_ASSESSMENT),
        True,
    ),
    (
        StepId.PLAN_VALIDATION,
        "Plan Validation",
        "risk_scorer",
        (StepId.PLAN_GENERATION,),
        False,
    ),
    (
        StepId.FINAL_OPTIMIZATION,
        "Final Optimization",
        "planner",
        (StepId.PLAN_VALIDATION,),
        False,
    ),
)


def build_steps() -> list[WorkflowStep]:
    return [
        WorkflowStep(
            id=step_id,
            name=name,
            collaborator=collaborator,
            dependencies=list(dependencies),
            critical=critical,
        )
        for step_id, name, collaborator, dependencies, critical in _STEP_DECLARATIONS
    ]


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def format_duration(minutes: float) -> str:
    hours, mins = divmod(int(round(minutes)), 60)
    if hours and mins:
        return f"{hours}h {mins}m"
    if hours:
        return f"{hours}h"
    return f"{mins}m"


@dataclass
class _Run:
    """Mutable state of one orchestration run."""

    orchestration_id: str
    session_id: str
    request: OrchestrationRequest
    steps: list[WorkflowStep]
    started_at: datetime
    warnings: list[str] = field(default_factory=list)
    execution_order: list[str] = field(default_factory=list)
    market: MarketAnalysis | None = None
    risk: RiskAssessment | None = None
    proposal: PlanProposal | None = None
    validation: PlanValidation | None = None
    plan_artifact_id: str | None = None

    def step(self, step_id: StepId) -> WorkflowStep:
        return next(s for s in self.steps if s.id == step_id)


@dataclass
class OrchestratorStats:
    total_orchestrations: int = 0
    completed_orchestrations: int = 0
    failed_orchestrations: int = 0
    active_orchestrations: int = 0
    average_duration_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        finished = self.completed_orchestrations + self.failed_orchestrations
        return self.completed_orchestrations / finished if finished else 0.0


@dataclass
class WorkflowOrchestrator:
    """Runs the planning DAG against injected collaborators."""

    bus: EventBus
    artifacts: ArtifactStore
    market_data: MarketDataProvider
    risk_scorer: RiskScorer
    planner: Planner
    metrics: MetricsCollector | None = None
    sessions: SessionStateStore | None = None
    sizing: PositionSizingConfig = field(default_factory=PositionSizingConfig)
    risk_thresholds: RiskConfig = field(default_factory=RiskConfig)
    collaborator_timeout: float = 30.0
    collaborator_retries: int = 0
    clock: Callable[[], datetime] | None = None

    # Maps step id to handler method name.
    _STEP_HANDLERS = {
        StepId.MARKET_ANALYSIS: "_run_market_analysis",
        StepId.RISK_ASSESSMENT: "_run_risk_assessment",
        StepId.PLAN_GENERATION: "_run_plan_generation",
        StepId.PLAN_VALIDATION: "_run_plan_validation",
        StepId.FINAL_OPTIMIZATION: "_run_final_optimization",
    }

    def __post_init__(self) -> None:
        if self.clock is None:
            self.clock = lambda: datetime.now(timezone.utc)
        self._active: dict[str, _Run] = {}
        self._stats = OrchestratorStats()
        self._total_duration_ms = 0.0

    # ========================================================================
    # Public API
    # ========================================================================

    async def run(self, request: OrchestrationRequest) -> OrchestrationResult:
        """Run the full planning workflow for one request.

        Raises:
            OrchestrationError: If a critical step fails
        """
        run = _Run(
            orchestration_id=f"orch_{uuid.uuid4().hex[:16]}",
            session_id=request.session_id or f"session_{uuid.uuid4().hex[:16]}",
            request=request,
            steps=build_steps(),
            started_at=self.clock(),
        )
        self._active[run.orchestration_id] = run
        self._stats.total_orchestrations += 1
        logger.info(
            "Orchestration %s started: %s -> %s budget=%s risk=%s",
            run.orchestration_id,
            request.token_in,
            request.token_out,
            request.budget,
            request.user_risk_level.value,
        )

        try:
            if request.session_id is None:
                await self.bus.emit(
                    EventType.SESSION_CREATED,
                    source=SOURCE,
                    session_id=run.session_id,
                    data={"session_id": run.session_id, "user_id": request.user_id},
                )
            for step in run.steps:
                await self._execute_step(run, step)
            result = await self._complete(run)
        except OrchestrationError:
            self._finish(run, success=False)
            await self._record_metrics(run, success=False)
            raise
        finally:
            self._active.pop(run.orchestration_id, None)

        self._finish(run, success=True)
        await self._record_metrics(run, success=True, result=result)
        logger.info(
            "Orchestration %s completed: %d legs, quality=%.2f",
            run.orchestration_id,
            len(result.dca_plan),
            result.quality_score,
        )
        return result

    def stats(self) -> OrchestratorStats:
        return OrchestratorStats(
            total_orchestrations=self._stats.total_orchestrations,
            completed_orchestrations=self._stats.completed_orchestrations,
            failed_orchestrations=self._stats.failed_orchestrations,
            active_orchestrations=len(self._active),
            average_duration_ms=self._stats.average_duration_ms,
        )

    def active_orchestrations(self) -> list[dict[str, Any]]:
        return [
            {
                "orchestration_id": run.orchestration_id,
                "session_id": run.session_id,
                "started_at": run.started_at.isoformat(),
                "steps": {s.id.value: s.status.value for s in run.steps},
            }
            for run in self._active.values()
        ]

    # ========================================================================
    # Step execution
    # ========================================================================

    async def _execute_step(self, run: _Run, step: WorkflowStep) -> None:
        blocked = [
            dep.value for dep in step.dependencies if run.step(dep).status != StepStatus.COMPLETED
        ]
        if blocked:
            step.status = StepStatus.SKIPPED
            logger.info("Skipping %s: dependencies not completed: %s", step.id.value, blocked)
            return

        step.status = StepStatus.RUNNING
        step.start_time = self.clock()
        handler = getattr(self, self._STEP_HANDLERS[step.id])
        try:
            step.result = await handler(run)
        except Exception as e:
            step.status = StepStatus.FAILED
            step.error = str(e) or type(e).__name__
            step.end_time = self.clock()
            await self._step_failed(run, step, e)
            return

        step.status = StepStatus.COMPLETED
        step.end_time = self.clock()
        run.execution_order.append(step.id.value)

    async def _step_failed(self, run: _Run, step: WorkflowStep, error: Exception) -> None:
        context = {
            "orchestration_id": run.orchestration_id,
            "step_id": step.id.value,
            "collaborator": step.collaborator,
        }
        if step.critical:
            logger.error("Critical step %s failed: %s", step.id.value, step.error)
            await self.bus.agent_error(
                SOURCE,
                f"{step.name} failed: {step.error}",
                session_id=run.session_id,
                context=context,
            )
            raise OrchestrationError(
                f"{step.name} failed: {step.error}",
                orchestration_id=run.orchestration_id,
                session_id=run.session_id,
                step_id=step.id.value,
                cause=error,
            ) from error

        warning = f"{step.name} failed: {step.error}"
        logger.warning("Non-critical step %s failed: %s", step.id.value, step.error)
        run.warnings.append(warning)
        await self.bus.agent_warning(SOURCE, warning, session_id=run.session_id, context=context)

    async def _call(self, collaborator: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Invoke a collaborator with a timeout, retrying up to ``collaborator_retries`` times."""
        attempts = self.collaborator_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(factory(), timeout=self.collaborator_timeout)
            except asyncio.TimeoutError as e:
                error: Exception = CollaboratorError(
                    f"{collaborator} timed out after {self.collaborator_timeout}s",
                    collaborator=collaborator,
                )
                error.__cause__ = e
            except CollaboratorError as e:
                error = e
            except Exception as e:
                error = CollaboratorError(f"{collaborator} failed: {e}", collaborator=collaborator)
                error.__cause__ = e
            if attempt < attempts:
                logger.warning(
                    "%s call failed (attempt %d/%d): %s", collaborator, attempt, attempts, error
                )
        raise error

    async def _run_market_analysis(self, run: _Run) -> MarketAnalysis:
        request = run.request
        snapshot = await self._call(
            "market_data", lambda: self.market_data.get_snapshot(request.token_out)
        )
        analysis = analyze_market(request.token_in, request.token_out, snapshot, now=self.clock())
        run.market = analysis
        self.artifacts.create_market_analysis(
            run.session_id, analysis.model_dump(mode="json"), source="market_data"
        )
        await self.bus.emit(
            EventType.MARKET_DATA_UPDATED,
            source=SOURCE,
            session_id=run.session_id,
            data={
                "token": snapshot.token,
                "price": snapshot.price,
                "volume_24h": snapshot.volume_24h,
                "change_percent_24h": snapshot.change_percent_24h,
                "volatility_category": analysis.volatility_category.value,
                "trend": analysis.trend.value,
            },
        )
        return analysis

    async def _run_risk_assessment(self, run: _Run) -> RiskAssessment:
        request = run.request
        assessment = await self._call(
            "risk_scorer",
            lambda: self.risk_scorer.assess(
                RiskRequest(
                    token_in=request.token_in,
                    token_out=request.token_out,
                    budget=request.budget,
                    user_risk_level=request.user_risk_level,
                    market=run.market.snapshot,
                )
            ),
        )
        run.risk = assessment
        self.artifacts.create_risk_assessment(
            run.session_id, assessment.model_dump(mode="json"), source="risk_scorer"
        )
        await self.bus.emit(
            EventType.RISK_ASSESSMENT_CHANGED,
            source=SOURCE,
            session_id=run.session_id,
            data={
                "orchestration_id": run.orchestration_id,
                "new_risk": assessment.overall_risk.value,
                "risk_score": assessment.risk_score,
            },
        )
        await self._check_risk_thresholds(run, assessment)
        return assessment

    async def _check_risk_thresholds(self, run: _Run, assessment: RiskAssessment) -> None:
        tier = run.request.user_risk_level
        limits = self.risk_thresholds.for_tier(tier)
        if assessment.risk_score > limits.max_risk_score:
            message = (
                f"Risk score {assessment.risk_score:.2f} exceeds the {tier.value} "
                f"maximum of {limits.max_risk_score:.2f}"
            )
        elif assessment.risk_score > limits.warning_threshold:
            message = (
                f"Risk score {assessment.risk_score:.2f} is above the {tier.value} "
                f"warning threshold of {limits.warning_threshold:.2f}"
            )
        else:
            return
        run.warnings.append(message)
        await self.bus.agent_warning(
            SOURCE,
            message,
            session_id=run.session_id,
            context={"orchestration_id": run.orchestration_id, "risk_score": assessment.risk_score},
        )

    def _plan_shape(self, run: _Run) -> tuple[int, int]:
        """Choose leg count and interval from market, risk, sizing and preferences."""
        request = run.request
        recommendation = run.market.recommendations[request.user_risk_level.value]
        legs = recommendation.legs
        interval = recommendation.interval_minutes

        sizing = run.risk.position_sizing
        if sizing is not None and sizing.max_leg_percent > 0:
            legs = max(legs, math.ceil(100 / sizing.max_leg_percent))
        legs = max(legs, math.ceil(100 / self.sizing.max_single_leg_percent))
        legs = min(max(legs, self.sizing.min_legs), self.sizing.max_legs)

        preferences = request.preferences
        if preferences.max_legs is not None:
            legs = min(legs, preferences.max_legs)
        if preferences.min_interval_mins is not None:
            interval = max(interval, preferences.min_interval_mins)
        if preferences.max_interval_mins is not None:
            interval = min(interval, preferences.max_interval_mins)
        return legs, interval

    async def _generate(self, run: _Run, legs: int, interval: int) -> PlanProposal:
        request = run.request
        plan_request = PlanRequest(
            token_in=request.token_in,
            token_out=request.token_out,
            budget=request.budget,
            legs=legs,
            interval_minutes=interval,
            user_risk_level=request.user_risk_level,
            start_time=self.clock(),
            context={
                "trend": run.market.trend.value if run.market else None,
                "overall_risk": run.risk.overall_risk.value if run.risk else None,
                "user_timezone": request.preferences.user_timezone,
                "avoid_events": request.preferences.avoid_events,
            },
        )
        proposal = await self._call("planner", lambda: self.planner.plan(plan_request))
        validate_legs(proposal.legs, request.budget)
        if proposal.interval_minutes is None:
            proposal = proposal.model_copy(update={"interval_minutes": interval})
        return proposal

    async def _run_plan_generation(self, run: _Run) -> PlanProposal:
        legs, interval = self._plan_shape(run)
        proposal = await self._generate(run, legs, interval)
        run.proposal = proposal
        run.plan_artifact_id = self.artifacts.create_dca_plan(
            run.session_id,
            self._plan_data(run, proposal),
            source="planner",
            tags=[run.request.user_risk_level.value],
        )
        return proposal

    async def _run_plan_validation(self, run: _Run) -> PlanValidation:
        request = run.request
        proposal = run.proposal
        assessment = await self._call(
            "risk_scorer",
            lambda: self.risk_scorer.assess(
                RiskRequest(
                    token_in=request.token_in,
                    token_out=request.token_out,
                    budget=request.budget,
                    user_risk_level=request.user_risk_level,
                    market=run.market.snapshot,
                    proposed_legs=proposal.legs,
                    interval_minutes=proposal.interval_minutes,
                )
            ),
        )
        validation = assessment.plan_validation or PlanValidation(is_valid=True)
        run.validation = validation
        self.artifacts.update(
            run.plan_artifact_id, data={"validation": validation.model_dump(mode="json")}
        )
        return validation

    async def _run_final_optimization(self, run: _Run) -> dict[str, Any]:
        proposal = run.proposal
        if run.validation is None or run.validation.is_valid:
            return {"optimized": False, "legs": len(proposal.legs)}

        legs = min(len(proposal.legs), OPTIMIZED_MAX_LEGS)
        interval = max(proposal.interval_minutes or 0, OPTIMIZED_MIN_INTERVAL_MINUTES)
        optimized = await self._generate(run, legs, interval)
        run.proposal = optimized
        self.artifacts.update(
            run.plan_artifact_id, data=self._plan_data(run, optimized) | {"optimized": True}
        )
        await self.bus.emit(
            EventType.DCA_PLAN_UPDATED,
            source=SOURCE,
            session_id=run.session_id,
            data={
                "orchestration_id": run.orchestration_id,
                "plan_artifact_id": run.plan_artifact_id,
                "legs": legs,
                "interval_minutes": interval,
            },
        )
        return {"optimized": True, "legs": legs, "interval_minutes": interval}

    # ========================================================================
    # Result composition
    # ========================================================================

    def _plan_data(self, run: _Run, proposal: PlanProposal) -> dict[str, Any]:
        return {
            "orchestration_id": run.orchestration_id,
            "token_in": run.request.token_in,
            "token_out": run.request.token_out,
            "budget": run.request.budget,
            "user_risk_level": run.request.user_risk_level.value,
            "interval_minutes": proposal.interval_minutes,
            "strategy": proposal.strategy,
            "legs": [leg.model_dump(mode="json") for leg in proposal.legs],
        }

    async def _complete(self, run: _Run) -> OrchestrationResult:
        market, risk, proposal = run.market, run.risk, run.proposal
        validation = run.validation

        validation_results = ValidationResults(
            market_validation=market is not None
            and market.volatility_category is not None
            and market.trend is not None,
            risk_validation=risk is not None and risk.position_sizing is not None,
            plan_validation=bool(proposal.legs),
            plan_check=validation,
            overall_valid=False,
        )
        overall_valid = (
            validation_results.market_validation
            and validation_results.risk_validation
            and validation_results.plan_validation
            and (validation is None or validation.is_valid)
        )
        validation_results.overall_valid = overall_valid

        total = sum(leg.amount for leg in proposal.legs)
        span = (proposal.interval_minutes or 0) * (len(proposal.legs) - 1)
        recommendations = [
            *market.opportunities,
            *risk.recommendations,
            f"Execute {len(proposal.legs)} legs over {format_duration(span)} "
            f"with total amount ${total:.2f}",
        ]
        if proposal.strategy:
            recommendations.append(proposal.strategy)

        warnings = [*run.warnings, *risk.warnings]
        if validation is not None and not validation.is_valid:
            warnings.extend(validation.issues)

        valid_bonus = 0.3 if overall_valid else 0.0
        quality = _clamp(market.trading_score * 0.3 + (1 - risk.risk_score) * 0.4 + valid_bonus)
        confidence = _clamp(market.confidence * 0.3 + risk.confidence * 0.4 + valid_bonus)

        result = OrchestrationResult(
            orchestration_id=run.orchestration_id,
            session_id=run.session_id,
            market_analysis=market,
            risk_assessment=risk,
            dca_plan=list(proposal.legs),
            strategy=proposal.strategy,
            interval_minutes=proposal.interval_minutes,
            validation_results=validation_results,
            recommendations=recommendations,
            warnings=warnings,
            quality_score=quality,
            confidence_level=confidence,
            agent_execution_order=list(run.execution_order),
            steps=[s.model_copy(update={"result": None}) for s in run.steps],
            plan_artifact_id=run.plan_artifact_id,
            started_at=run.started_at,
            completed_at=self.clock(),
        )

        self.artifacts.create(
            ArtifactType.OPTIMIZATION_RESULT,
            run.session_id,
            {
                "request": run.request.model_dump(mode="json"),
                "quality_score": quality,
                "confidence_level": confidence,
                "overall_valid": overall_valid,
                "warnings": warnings,
                "agent_execution_order": result.agent_execution_order,
                "steps": {s.id.value: s.status.value for s in run.steps},
            },
            ArtifactMetadata(
                source=SOURCE, tags=["orchestration"], parent_id=run.plan_artifact_id
            ),
        )
        if self.sessions is not None:
            self.sessions.ensure(run.session_id, run.request.user_id)
            self.sessions.merge_state(
                run.session_id,
                {
                    "last_orchestration": {
                        "orchestration_id": run.orchestration_id,
                        "plan_artifact_id": run.plan_artifact_id,
                        "token_in": run.request.token_in,
                        "token_out": run.request.token_out,
                        "budget": run.request.budget,
                        "quality_score": quality,
                        "overall_valid": overall_valid,
                    }
                },
            )
        await self.bus.emit(
            EventType.DCA_PLAN_CREATED,
            source=SOURCE,
            session_id=run.session_id,
            data={
                "orchestration_id": run.orchestration_id,
                "plan_artifact_id": run.plan_artifact_id,
                "token_in": run.request.token_in,
                "token_out": run.request.token_out,
                "budget": run.request.budget,
                "legs": len(proposal.legs),
                "quality_score": quality,
                "overall_valid": overall_valid,
            },
        )
        return result

    def _finish(self, run: _Run, *, success: bool) -> None:
        duration = (self.clock() - run.started_at).total_seconds() * 1000
        if success:
            self._stats.completed_orchestrations += 1
        else:
            self._stats.failed_orchestrations += 1
        self._total_duration_ms += duration
        finished = self._stats.completed_orchestrations + self._stats.failed_orchestrations
        self._stats.average_duration_ms = self._total_duration_ms / finished

    async def _record_metrics(
        self, run: _Run, *, success: bool, result: OrchestrationResult | None = None
    ) -> None:
        if self.metrics is None:
            return
        failed_steps = sum(1 for s in run.steps if s.status == StepStatus.FAILED)
        await self.metrics.record(
            AgentMetrics(
                agent_id=SOURCE,
                agent_type="orchestrator",
                session_id=run.session_id,
                timestamp=self.clock(),
                performance=PerformanceMetrics(
                    execution_time=(self.clock() - run.started_at).total_seconds() * 1000,
                    success_rate=1.0 if success else 0.0,
                    error_rate=failed_steps / len(run.steps),
                    throughput=float(len(run.execution_order)),
                ),
                quality=QualityMetrics(
                    accuracy=result.quality_score if result else 0.0,
                    precision=result.confidence_level if result else 0.0,
                ),
                business=BusinessMetrics(
                    plans_generated=1.0 if success else 0.0,
                    total_volume=run.request.budget if success else 0.0,
                ),
            )
        )
