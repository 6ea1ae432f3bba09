"""Read-only views over a committed instance."""

from __future__ import annotations

from pydantic import BaseModel

from stage_workflow_orchestrator.orchestrator.templates import WorkflowTemplate
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import (
    RunState,
    WorkflowInstance,
)


class CurrentPhase(BaseModel):
    stage_id: str
    name: str
    index: int
    total_stages: int
    run_state: RunState
    entered_at: str | None = None


class PendingRequirement(BaseModel):
    requirement_id: str
    name: str
    is_required: bool


class Progress(BaseModel):
    completed_stages: int
    total_stages: int
    percent: int


def current_phase(instance: WorkflowInstance, template: WorkflowTemplate) -> CurrentPhase:
    stage = template.stage(instance.current_stage_id)
    entry = instance.open_history_entry() or (
        instance.stage_history[-1] if instance.stage_history else None
    )
    return CurrentPhase(
        stage_id=stage.stage_id,
        name=stage.name,
        index=template.stage_index(stage.stage_id),
        total_stages=len(template.stages),
        run_state=instance.run_state,
        entered_at=entry.entered_at.isoformat() if entry is not None else None,
    )


def pending_requirements(
    instance: WorkflowInstance, template: WorkflowTemplate
) -> list[PendingRequirement]:
    """Requirements of the current stage that are not completed yet, optional ones included."""

    done = instance.completed_requirement_ids
    return [
        PendingRequirement(requirement_id=r.requirement_id, name=r.name, is_required=r.is_required)
        for r in template.stage(instance.current_stage_id).requirements
        if r.requirement_id not in done
    ]


def progress(instance: WorkflowInstance, template: WorkflowTemplate) -> Progress:
    # Stages before the current one count as done; a completed instance is at 100.
    total = len(template.stages)
    if instance.run_state == RunState.COMPLETED:
        completed = total
    else:
        completed = template.stage_index(instance.current_stage_id)
    return Progress(
        completed_stages=completed,
        total_stages=total,
        percent=round(completed * 100 / total),
    )
