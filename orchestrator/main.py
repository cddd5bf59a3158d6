from __future__ import annotations

import os
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from orchestrator.errors import OrchestratorError
from orchestrator.schemas import error_envelope, success_envelope
from orchestrator.supervisor import OrchestratorSupervisor, create_supervisor_from_env


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _trace_id_from_request(request: Request) -> str:
    trace_id = request.headers.get("x-trace-id")
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise OrchestratorError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def create_app(
    supervisor: OrchestratorSupervisor | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> FastAPI:
    env = os.environ if environ is None else environ
    if supervisor is None:
        supervisor = create_supervisor_from_env(env)
    autostart = _as_bool(env.get("ORCH_AUTOSTART", "false"))

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if autostart:
            supervisor.start()
        try:
            yield
        finally:
            if autostart:
                supervisor.stop(timeout_s=5.0)

    app = FastAPI(title="Stage Orchestrator", version="0.1.0", lifespan=lifespan)
    app.state.supervisor = supervisor

    @app.exception_handler(OrchestratorError)
    async def handle_orchestrator_error(request: Request, exc: OrchestratorError):
        return JSONResponse(
            status_code=exc.http_status,
            content=error_envelope(
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                trace_id=_trace_id_from_request(request),
            ),
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.get("/api/v1/internal/orchestrators")
    def list_orchestrators(
        request: Request,
        x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
    ) -> dict[str, object]:
        _require_internal_debug(x_internal_debug)
        return success_envelope({"stages": supervisor.snapshot()}, _trace_id_from_request(request))

    @app.post("/api/v1/internal/orchestrators/{stage}/run-once")
    def run_stage_once(
        stage: str,
        request: Request,
        x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
    ) -> dict[str, object]:
        _require_internal_debug(x_internal_debug)
        orchestrator = supervisor.get(stage)
        if orchestrator is None:
            raise OrchestratorError(
                code="STAGE_NOT_FOUND",
                message=f"stage not configured: {stage}",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        stats = None if supervisor.is_running(stage) else orchestrator.try_run_once()
        if stats is None:
            raise OrchestratorError(
                code="STAGE_BUSY",
                message=f"stage is already processing: {stage}",
                error_class="conflict",
                retryable=True,
                http_status=409,
            )
        return success_envelope({"stage": stage, "stats": stats}, _trace_id_from_request(request))

    return app
