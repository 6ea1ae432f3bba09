"""FastAPI app factory.

Endpoints are thin, read-only wrappers over ``WorkflowService`` queries.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stage_workflow_orchestrator import __version__
from stage_workflow_orchestrator.orchestrator.config import OrchestratorSettings
from stage_workflow_orchestrator.orchestrator.errors import (
    FatalEngineError,
    InstanceNotFoundError,
    StateConflictError,
    TemplateNotFoundError,
    ValidationError,
    WorkflowError,
)
from stage_workflow_orchestrator.orchestrator.runtime.service import (
    InstanceDescription,
    WorkflowService,
)
from stage_workflow_orchestrator.orchestrator.workflow.queries import (
    CurrentPhase,
    PendingRequirement,
    Progress,
)
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import WorkflowInstance
from stage_workflow_orchestrator.server.models import ApiError, ApiHistory

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[WorkflowError], int], ...] = (
    (InstanceNotFoundError, 404),
    (TemplateNotFoundError, 404),
    (ValidationError, 422),
    (StateConflictError, 409),
    (FatalEngineError, 500),
)


def _status_for(error: WorkflowError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(service: WorkflowService | None = None) -> FastAPI:
    if service is None:
        service = WorkflowService.from_settings(OrchestratorSettings())
        service.recover()

    app = FastAPI(
        title="Stage Workflow Orchestrator",
        version=__version__,
        description="Read-only monitoring API over workflow instances.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.service = service

    @app.exception_handler(WorkflowError)
    def workflow_error(request: Request, exc: WorkflowError) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            logger.error("Request failed", extra={"path": request.url.path, "code": exc.code})
        body = ApiError(code=exc.code, message=str(exc), details=getattr(exc, "errors", []))
        return JSONResponse(status_code=status, content=body.model_dump(mode="json"))

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/instances/{instance_id}", response_model=InstanceDescription)
    def describe(instance_id: str) -> InstanceDescription:
        return service.describe(instance_id)

    @app.get("/api/instances/{instance_id}/state", response_model=WorkflowInstance)
    def get_state(instance_id: str) -> WorkflowInstance:
        return service.get_state(instance_id)

    @app.get("/api/instances/{instance_id}/phase", response_model=CurrentPhase)
    def get_current_phase(instance_id: str) -> CurrentPhase:
        return service.get_current_phase(instance_id)

    @app.get(
        "/api/instances/{instance_id}/pending-requirements",
        response_model=list[PendingRequirement],
    )
    def get_pending_requirements(instance_id: str) -> list[PendingRequirement]:
        return service.get_pending_requirements(instance_id)

    @app.get("/api/instances/{instance_id}/progress", response_model=Progress)
    def get_progress(instance_id: str) -> Progress:
        return service.get_progress(instance_id)

    @app.get("/api/instances/{instance_id}/history", response_model=ApiHistory)
    def get_history(instance_id: str) -> ApiHistory:
        entries = service.get_history(instance_id)
        return ApiHistory(
            instance_id=instance_id,
            entries=entries,
            summary=service.compliance_report(instance_id),
        )

    return app
