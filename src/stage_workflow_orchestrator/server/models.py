"""Pydantic models for the monitoring API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from stage_workflow_orchestrator.orchestrator.workflow.audit import AuditEntry


class ApiError(BaseModel):
    code: str
    message: str
    details: list[object] = Field(default_factory=list)


class ApiHistory(BaseModel):
    instance_id: str
    entries: list[AuditEntry]
    summary: dict[str, object]
