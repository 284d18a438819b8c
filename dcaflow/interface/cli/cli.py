import asyncio
import logging
import uuid
from pathlib import Path

import click
from pydantic import BaseModel

from dcaflow.application.config_loader import load_config
from dcaflow.domain.errors import OrchestrationError
from dcaflow.domain.models import (
    Leg,
    OrchestrationRequest,
    OrchestrationResult,
    PlanPreferences,
    RiskTolerance,
)
from dcaflow.interface.cli.output_models import (
    CollaboratorsOutput,
    CollaboratorSummary,
    LegSummary,
    OrchestrateOutput,
    RunOutput,
    StatsOutput,
)

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _json_emit(model: BaseModel) -> None:
    # Single-line JSON, omit None fields (e.g., OrchestrateOutput.session_id on error).
    click.echo(model.model_dump_json(exclude_none=True), nl=True)


def _get_json_mode(ctx: click.Context) -> bool:
    obj = ctx.obj or {}
    return bool(obj.get("json", False))


def _format_error(e: Exception) -> str:
    """Format exception into user-friendly message."""
    if isinstance(e, OrchestrationError):
        return str(e)
    if isinstance(e, ValueError):
        return str(e)
    if isinstance(e, KeyError):
        return f"Missing required field: {e.args[0]}"
    return str(e)


def _build(events: bool):
    from dcaflow.application.services import build_services

    cfg = load_config(project_root=Path.cwd(), user_home=Path.home())
    services = build_services(cfg)
    if events:
        from dcaflow.domain.events import ALL_EVENT_TYPES, StderrEventObserver

        services.bus.subscribe(ALL_EVENT_TYPES, StderrEventObserver())
    return services


def _request(
    token_in: str,
    token_out: str,
    budget: float,
    risk: str,
    session_id: str | None,
    max_legs: int | None,
    min_interval: int | None,
    max_interval: int | None,
) -> OrchestrationRequest:
    return OrchestrationRequest(
        token_in=token_in,
        token_out=token_out,
        budget=budget,
        user_risk_level=RiskTolerance(risk),
        session_id=session_id,
        preferences=PlanPreferences(
            max_legs=max_legs,
            min_interval_mins=min_interval,
            max_interval_mins=max_interval,
        ),
    )


def _leg_summaries(legs) -> list[LegSummary]:
    return [
        LegSummary(
            index=leg.index,
            amount=leg.amount,
            scheduled_time=leg.scheduled_time.isoformat(),
            status=leg.status.value if isinstance(leg, Leg) else None,
            tx_ref=leg.tx_ref if isinstance(leg, Leg) else None,
        )
        for leg in legs
    ]


def _orchestrate_output(result: OrchestrationResult) -> OrchestrateOutput:
    return OrchestrateOutput(
        exit_code=0,
        orchestration_id=result.orchestration_id,
        session_id=result.session_id,
        strategy=result.strategy,
        interval_minutes=result.interval_minutes,
        legs=_leg_summaries(result.dca_plan),
        overall_risk=result.risk_assessment.overall_risk.value,
        risk_score=result.risk_assessment.risk_score,
        overall_valid=result.validation_results.overall_valid,
        quality_score=result.quality_score,
        confidence_level=result.confidence_level,
        recommendations=result.recommendations,
        warnings=result.warnings,
        plan_artifact_id=result.plan_artifact_id,
    )


def _plan_options(func):
    options = [
        click.option("--token-in", "token_in", required=True, type=str),
        click.option("--token-out", "token_out", required=True, type=str),
        click.option("--budget", required=True, type=float),
        click.option(
            "--risk",
            type=click.Choice([t.value for t in RiskTolerance]),
            default=RiskTolerance.MODERATE.value,
            show_default=True,
        ),
        click.option("--session-id", "session_id", required=False, type=str),
        click.option("--max-legs", "max_legs", required=False, type=int),
        click.option("--min-interval", "min_interval", required=False, type=int),
        click.option("--max-interval", "max_interval", required=False, type=int),
        click.option("--events", is_flag=True, help="Emit bus events to stderr."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group(help="DCA orchestration engine CLI.")
@click.option("--json", "json_output", is_flag=True, help="Emit machine-readable JSON on stdout.")
@click.option(
    "--log-level",
    "log_level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.pass_context
def cli(ctx: click.Context, json_output: bool, log_level: str) -> None:
    ctx.ensure_object(dict)
    ctx.obj["json"] = bool(json_output)
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("orchestrate")
@_plan_options
@click.pass_context
def orchestrate_cmd(
    ctx: click.Context,
    token_in: str,
    token_out: str,
    budget: float,
    risk: str,
    session_id: str | None,
    max_legs: int | None,
    min_interval: int | None,
    max_interval: int | None,
    events: bool,
) -> None:
    """Plan a DCA schedule and print it."""

    async def _run():
        services = _build(events)
        try:
            request = _request(
                token_in, token_out, budget, risk, session_id, max_legs, min_interval, max_interval
            )
            return await services.orchestrator.run(request)
        finally:
            await services.aclose()

    try:
        result = asyncio.run(_run())

        if _get_json_mode(ctx):
            _json_emit(_orchestrate_output(result))
            raise click.exceptions.Exit(0)

        click.echo(f"session={result.session_id}")
        click.echo(f"strategy={result.strategy}")
        click.echo(
            f"risk={result.risk_assessment.overall_risk.value} "
            f"score={result.risk_assessment.risk_score:.2f} "
            f"valid={'true' if result.validation_results.overall_valid else 'false'}"
        )
        for leg in result.dca_plan:
            click.echo(f"leg {leg.index}: {leg.amount:g} at {leg.scheduled_time.isoformat()}")
        for warning in result.warnings:
            click.echo(f"warning: {warning}")

    except click.exceptions.Exit:
        raise
    except Exception as e:
        if _get_json_mode(ctx):
            _json_emit(
                OrchestrateOutput(
                    exit_code=1,
                    error=_format_error(e),
                    session_id=getattr(e, "session_id", None),
                    failed_step=getattr(e, "step_id", None),
                )
            )
            raise click.exceptions.Exit(1)
        raise click.ClickException(_format_error(e)) from e


@cli.command("run")
@_plan_options
@click.option("--delegation-id", "delegation_id", required=False, type=str)
@click.option("--delegator", required=True, type=str)
@click.option("--delegate", required=True, type=str)
@click.option("--router", required=True, type=str)
@click.option(
    "--wait",
    "wait_seconds",
    type=float,
    default=0.0,
    show_default=True,
    help="Keep ticking the scheduler for up to this many seconds.",
)
@click.pass_context
def run_cmd(
    ctx: click.Context,
    token_in: str,
    token_out: str,
    budget: float,
    risk: str,
    session_id: str | None,
    max_legs: int | None,
    min_interval: int | None,
    max_interval: int | None,
    events: bool,
    delegation_id: str | None,
    delegator: str,
    delegate: str,
    router: str,
    wait_seconds: float,
) -> None:
    """Plan a DCA schedule, then execute its due legs."""

    async def _run():
        services = _build(events)
        try:
            request = _request(
                token_in, token_out, budget, risk, session_id, max_legs, min_interval, max_interval
            )
            result = await services.orchestrator.run(request)
            execution_id = await services.schedule_plan(
                result,
                delegation_id=delegation_id or f"deleg_{uuid.uuid4().hex[:12]}",
                delegator=delegator,
                delegate=delegate,
                router=router,
            )
            loop = asyncio.get_running_loop()
            deadline = loop.time() + wait_seconds
            while True:
                await services.scheduler.tick()
                execution = services.scheduler.get(execution_id)
                if execution.is_terminal or loop.time() >= deadline:
                    break
                await asyncio.sleep(services.config.scheduler.tick_interval)
            return result, services.scheduler.get(execution_id)
        finally:
            await services.aclose()

    try:
        result, execution = asyncio.run(_run())
        exit_code = 1 if execution.status.value == "failed" else 0

        if _get_json_mode(ctx):
            _json_emit(
                RunOutput(
                    exit_code=exit_code,
                    session_id=result.session_id,
                    execution_id=execution.id,
                    status=execution.status.value,
                    completed_legs=execution.completed_leg_count,
                    total_legs=execution.total_leg_count,
                    legs=_leg_summaries(execution.legs),
                    execution_error=execution.error,
                )
            )
            raise click.exceptions.Exit(exit_code)

        click.echo(f"execution={execution.id}")
        click.echo(f"status={execution.status.value}")
        click.echo(f"legs={execution.completed_leg_count}/{execution.total_leg_count}")
        if execution.error:
            click.echo(f"error: {execution.error}")
        if exit_code:
            raise click.exceptions.Exit(exit_code)

    except click.exceptions.Exit:
        raise
    except Exception as e:
        if _get_json_mode(ctx):
            _json_emit(RunOutput(exit_code=1, error=_format_error(e)))
            raise click.exceptions.Exit(1)
        raise click.ClickException(_format_error(e)) from e


@cli.command("stats")
@click.pass_context
def stats_cmd(ctx: click.Context) -> None:
    """Show engine statistics for a freshly configured engine."""
    from dataclasses import asdict

    try:
        services = _build(events=False)
        try:
            stats = StatsOutput(
                exit_code=0,
                events=asdict(services.bus.stats()),
                artifacts=asdict(services.artifacts.stats()),
                callbacks=services.dispatcher.stats(),
                orchestrations=asdict(services.orchestrator.stats()),
                executions=asdict(services.scheduler.stats()),
            )
        finally:
            asyncio.run(services.aclose())

        if _get_json_mode(ctx):
            _json_emit(stats)
            raise click.exceptions.Exit(0)

        for section in ("events", "artifacts", "callbacks", "orchestrations", "executions"):
            click.echo(f"{section}:")
            for key, value in getattr(stats, section).items():
                click.echo(f"  {key}={value}")

    except click.exceptions.Exit:
        raise
    except Exception as e:
        if _get_json_mode(ctx):
            _json_emit(StatsOutput(exit_code=1, error=_format_error(e)))
            raise click.exceptions.Exit(1)
        raise click.ClickException(_format_error(e)) from e


@cli.command("collaborators")
@click.pass_context
def collaborators_cmd(ctx: click.Context) -> None:
    """List registered collaborator implementations."""
    from dcaflow.domain.providers import CollaboratorFactory, CollaboratorKind

    summaries = []
    for kind in CollaboratorKind:
        for key in CollaboratorFactory.list_collaborators(kind):
            meta = CollaboratorFactory.get_metadata(kind, key) or {}
            summaries.append(
                CollaboratorSummary(
                    kind=kind.value,
                    key=key,
                    name=meta.get("name"),
                    description=meta.get("description"),
                )
            )

    if _get_json_mode(ctx):
        _json_emit(CollaboratorsOutput(exit_code=0, collaborators=summaries))
        raise click.exceptions.Exit(0)

    for s in summaries:
        click.echo(f"{s.kind:12} {s.key:12} {s.description or ''}")


@cli.command("serve")
@click.option("--host", required=False, type=str)
@click.option("--port", required=False, type=int)
@click.option("--events", is_flag=True, help="Emit bus events to stderr.")
def serve_cmd(host: str | None, port: int | None, events: bool) -> None:
    """Run the HTTP API."""
    from dcaflow.interface.api.app import create_app, run_app

    try:
        services = _build(events)
    except Exception as e:
        raise click.ClickException(_format_error(e)) from e
    app = create_app(services)
    run_app(
        app,
        host=host or services.config.api.host,
        port=port or services.config.api.port,
        log_level=logging.getLevelName(logging.getLogger().level).lower(),
    )
