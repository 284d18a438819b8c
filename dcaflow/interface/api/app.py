"""HTTP API over the engine services (FastAPI, served by uvicorn)."""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from dcaflow.application.config_loader import load_config
from dcaflow.application.services import Services, build_services
from dcaflow.application.streaming import StreamKind
from dcaflow.domain.errors import (
    DcaflowError,
    OrchestrationError,
    PermissionDeniedError,
    ValidationError,
)
from dcaflow.domain.models import ExecutionRequest, OrchestrationRequest
from dcaflow.domain.models.callback import (
    CallbackBinding,
    LogAction,
    RateLimit,
    RetryPolicy,
    WebhookAction,
)
from dcaflow.domain.models.metrics import AgentMetrics
from dcaflow.interface.api.schemas import (
    CallbackBody,
    MetricsActionBody,
    MetricsRecordBody,
    OrchestrateBody,
    ScheduleBody,
    StreamActionBody,
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

NAMED_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def error_response(
    status_code: int, error: str, message: str | None = None, details: Any = None
) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": error}
    if message is not None:
        body["message"] = message
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _time_range(value: str | None) -> tuple[datetime | None, datetime | None]:
    """Parse ``1h``/``24h``/``7d``/``30d`` or ``start,end`` ISO timestamps."""
    if not value:
        return None, None
    if "," in value:
        start, end = value.split(",", 1)
        return datetime.fromisoformat(start), datetime.fromisoformat(end)
    now = datetime.now(timezone.utc)
    return now - NAMED_RANGES.get(value, NAMED_RANGES["24h"]), now


def _binding_from(body: CallbackBody, default_timeout: float) -> CallbackBinding:
    if body.kind == "webhook":
        action = WebhookAction(
            url=body.url,
            method=body.method,
            headers=body.headers,
            timeout=body.timeout or default_timeout,
        )
        retry = RetryPolicy(
            max_retries=body.max_retries,
            base_delay=body.base_delay,
            backoff_multiplier=body.backoff_multiplier,
        )
    else:
        action = LogAction(level=body.log_level, message=body.message)
        retry = None
    rate_limit = (
        RateLimit(max_calls=body.max_calls, window_seconds=body.window_seconds)
        if body.max_calls is not None
        else None
    )
    return CallbackBinding(
        trigger_event_types=frozenset(body.trigger_event_types),
        action=action,
        name=body.name,
        session_id=body.session_id,
        conditions=body.conditions,
        retry_policy=retry,
        rate_limit=rate_limit,
    )


def create_app(services: Services | None = None) -> FastAPI:
    """Create the API app. Services are started and stopped with the app lifespan."""
    services = services or build_services(load_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start()
        try:
            yield
        finally:
            await services.aclose()

    app = FastAPI(title="dcaflow", version=VERSION, lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            400, "invalid_parameters", "Request failed validation", exc.errors()
        )

    @app.exception_handler(ValidationError)
    async def _invalid_domain(request: Request, exc: ValidationError) -> JSONResponse:
        return error_response(400, "invalid_parameters", str(exc))

    # ========================================================================
    # Orchestration
    # ========================================================================

    @app.post("/orchestrate")
    async def orchestrate(body: OrchestrateBody) -> Any:
        request = OrchestrationRequest.model_validate(body.model_dump(exclude={"webhook_url"}))
        try:
            result = await services.orchestrator.run(request)
        except OrchestrationError as e:
            logger.error("Orchestration %s failed: %s", e.orchestration_id, e)
            return error_response(
                500,
                str(e),
                details={"session_id": e.session_id, "step_id": e.step_id},
            )

        callback_id = None
        if body.webhook_url:
            callback_id = services.dispatcher.register_completion_webhook(
                result.session_id, body.webhook_url
            )
        return {
            "success": True,
            "orchestration_id": result.orchestration_id,
            "session_id": result.session_id,
            "result": result.model_dump(mode="json"),
            "recommendations": result.recommendations,
            "warnings": result.warnings,
            "metadata": {
                "agent_execution_order": result.agent_execution_order,
                "plan_artifact_id": result.plan_artifact_id,
                "duration_ms": result.duration_ms,
                "callback_id": callback_id,
            },
        }

    @app.get("/orchestrate")
    async def orchestration_status(
        session_id: str | None = Query(default=None),
        orchestration_id: str | None = Query(default=None),
    ) -> Any:
        if not session_id and not orchestration_id:
            return error_response(
                400, "missing_parameters", "Either orchestration_id or session_id is required"
            )
        active = [
            o
            for o in services.orchestrator.active_orchestrations()
            if (orchestration_id is None or o["orchestration_id"] == orchestration_id)
            and (session_id is None or o["session_id"] == session_id)
        ]
        body: dict[str, Any] = {
            "success": True,
            "orchestrator_stats": asdict(services.orchestrator.stats()),
            "scheduler_stats": asdict(services.scheduler.stats()),
            "active_orchestrations": active,
            "alerts": [a.model_dump(mode="json") for a in services.metrics.active_alerts()],
        }
        if session_id:
            body["session"] = {
                "artifacts": [
                    {"id": a.id, "type": a.type.value, "version": a.version}
                    for a in services.artifacts.session_artifacts(session_id)
                ],
                "events": [
                    e.model_dump(mode="json") for e in services.bus.session_events(session_id)
                ],
                "executions": [
                    e.model_dump(mode="json")
                    for e in services.scheduler.executions()
                    if e.session_id == session_id
                ],
                "state": services.sessions.all_state(session_id),
            }
        return body

    # ========================================================================
    # Executions
    # ========================================================================

    @app.post("/executions")
    async def schedule_execution(body: ScheduleBody) -> Any:
        try:
            execution_id = await services.scheduler.schedule(
                ExecutionRequest.model_validate(body.model_dump())
            )
        except PermissionDeniedError as e:
            return error_response(403, "permission_denied", str(e))
        return {"success": True, "execution_id": execution_id}

    @app.get("/executions/{execution_id}")
    async def get_execution(execution_id: str) -> Any:
        execution = services.scheduler.get(execution_id)
        if execution is None:
            return error_response(404, "not_found", f"Unknown execution: {execution_id}")
        return {"success": True, "execution": execution.model_dump(mode="json")}

    async def _transition(execution_id: str, action: str) -> Any:
        if services.scheduler.get(execution_id) is None:
            return error_response(404, "not_found", f"Unknown execution: {execution_id}")
        changed = await getattr(services.scheduler, action)(execution_id)
        if not changed:
            status = services.scheduler.get(execution_id).status.value
            return error_response(409, "invalid_state", f"Cannot {action} a {status} execution")
        return {
            "success": True,
            "execution_id": execution_id,
            "status": services.scheduler.get(execution_id).status.value,
        }

    @app.post("/executions/{execution_id}/pause")
    async def pause_execution(execution_id: str) -> Any:
        return await _transition(execution_id, "pause")

    @app.post("/executions/{execution_id}/resume")
    async def resume_execution(execution_id: str) -> Any:
        return await _transition(execution_id, "resume")

    @app.post("/executions/{execution_id}/cancel")
    async def cancel_execution(execution_id: str) -> Any:
        return await _transition(execution_id, "cancel")

    # ========================================================================
    # Streams
    # ========================================================================

    @app.get("/stream")
    async def open_stream(
        type: str = Query(default=StreamKind.SESSION.value),
        session_id: str | None = Query(default=None),
        event_types: str | None = Query(default=None),
    ) -> Any:
        try:
            kind = StreamKind(type)
        except ValueError:
            return error_response(400, "invalid_type", f"Unknown stream type: {type}")
        if kind == StreamKind.EXECUTION and not session_id:
            return error_response(400, "missing_parameters", "session_id is required")
        try:
            stream = services.streams.open(
                kind,
                session_id=session_id,
                event_types=event_types.split(",") if event_types else None,
            )
        except ValueError as e:
            return error_response(400, "invalid_parameters", str(e))
        return StreamingResponse(
            stream.frames(),
            media_type="application/x-ndjson",
            headers={"Cache-Control": "no-cache", "X-Stream-Id": stream.id},
        )

    @app.post("/stream")
    async def manage_stream(body: StreamActionBody) -> Any:
        closed = services.streams.close(body.stream_id)
        return {"success": closed, "stream_id": body.stream_id, "action": body.action}

    # ========================================================================
    # Callbacks
    # ========================================================================

    @app.post("/callbacks")
    async def register_callback(body: CallbackBody) -> Any:
        try:
            binding = _binding_from(body, services.config.callbacks.default_webhook_timeout)
            callback_id = services.dispatcher.register(binding)
        except ValueError as e:
            return error_response(400, "invalid_parameters", str(e))
        return {"success": True, "callback_id": callback_id}

    @app.get("/callbacks")
    async def list_callbacks(session_id: str | None = Query(default=None)) -> Any:
        return {
            "success": True,
            "callbacks": [
                {
                    "id": b.id,
                    "name": b.name,
                    "kind": b.action.kind.value,
                    "session_id": b.session_id,
                    "trigger_event_types": sorted(t.value for t in b.trigger_event_types),
                    "enabled": b.enabled,
                    "trigger_count": b.trigger_count,
                    "error_count": b.error_count,
                }
                for b in services.dispatcher.bindings(session_id)
            ],
            "stats": services.dispatcher.stats(),
        }

    @app.delete("/callbacks/{callback_id}")
    async def unregister_callback(callback_id: str) -> Any:
        if not services.dispatcher.unregister(callback_id):
            return error_response(404, "not_found", f"Unknown callback: {callback_id}")
        return {"success": True, "callback_id": callback_id}

    # ========================================================================
    # Metrics
    # ========================================================================

    @app.get("/metrics")
    async def get_metrics(
        type: str = Query(default="summary"),
        agent_type: str | None = Query(default=None),
        session_id: str | None = Query(default=None),
        time_range: str | None = Query(default=None),
    ) -> Any:
        try:
            start, end = _time_range(time_range)
        except ValueError as e:
            return error_response(400, "invalid_time_range", str(e))
        metrics = services.metrics
        if type == "summary":
            latest = metrics.system_metrics(start, end)
            return {
                "success": True,
                "summary": {t: metrics.aggregate(t, start, end) for t in metrics.agent_types()},
                "system_metrics": latest[-1].model_dump(mode="json") if latest else None,
                "active_alerts": [a.model_dump(mode="json") for a in metrics.active_alerts()],
            }
        if type == "agent":
            if not agent_type:
                return error_response(
                    400, "missing_agent_type", "agent_type is required for agent metrics"
                )
            samples = [
                m
                for m in metrics.agent_metrics(agent_type=agent_type, start=start, end=end)
                if session_id is None or m.session_id == session_id
            ]
            return {
                "success": True,
                "agent_type": agent_type,
                "metrics": [m.model_dump(mode="json") for m in samples],
                "aggregates": metrics.aggregate(agent_type, start, end),
            }
        if type == "system":
            return {
                "success": True,
                "system_metrics": [
                    m.model_dump(mode="json") for m in metrics.system_metrics(start, end)
                ],
                "stream_stats": services.streams.stats(),
            }
        if type == "report":
            return {"success": True, "report": metrics.performance_report(), "format": "markdown"}
        if type == "alerts":
            alerts = metrics.active_alerts()
            return {
                "success": True,
                "alerts": [a.model_dump(mode="json") for a in alerts],
                "alert_count": len(alerts),
            }
        return error_response(
            400, "invalid_type", "type must be one of: summary, agent, system, report, alerts"
        )

    @app.post("/metrics")
    async def record_metrics(body: MetricsRecordBody) -> Any:
        sample = AgentMetrics(
            agent_id=f"{body.agent_type}_{body.session_id or 'global'}",
            agent_type=body.agent_type,
            session_id=body.session_id,
            performance=body.performance,
            quality=body.quality,
            user_experience=body.user_experience,
            business=body.business,
            custom=body.custom,
        )
        alerts = await services.metrics.record(sample)
        return {
            "success": True,
            "agent_type": body.agent_type,
            "timestamp": sample.timestamp.isoformat(),
            "alerts": [a.id for a in alerts],
        }

    @app.put("/metrics")
    async def manage_metrics(body: MetricsActionBody) -> Any:
        metrics = services.metrics
        if body.action == "acknowledge_alert":
            acknowledged = metrics.acknowledge(body.alert_id)
            return {
                "success": acknowledged,
                "alert_id": body.alert_id,
                "message": "Alert acknowledged" if acknowledged else "Alert not found",
            }
        if body.action == "add_threshold":
            try:
                metrics.add_threshold(body.threshold)
            except ValueError as e:
                return error_response(400, "invalid_threshold", str(e))
            return {"success": True, "threshold": body.threshold.model_dump(mode="json")}
        removed = metrics.remove_threshold(body.metric_path)
        return {
            "success": removed,
            "metric_path": body.metric_path,
            "message": "Threshold removed" if removed else "Threshold not found",
        }

    @app.get("/health")
    async def health() -> Any:
        return {
            "status": "ok",
            "scheduler_running": services.scheduler.running,
            "active_subscriptions": len(services.bus.active_subscriptions()),
        }

    @app.exception_handler(DcaflowError)
    async def _engine_error(request: Request, exc: DcaflowError) -> JSONResponse:
        logger.error("Request %s failed: %s", request.url.path, exc)
        return error_response(500, str(exc))

    return app


def run_app(
    app: FastAPI,
    *,
    host: str = "127.0.0.1",
    port: int = 8000,
    log_level: str = "info",
) -> None:
    """Run the app through uvicorn."""
    uvicorn.run(app, host=host, port=port, log_level=log_level)
