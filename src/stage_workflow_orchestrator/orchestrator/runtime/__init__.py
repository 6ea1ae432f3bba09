"""Runtime around the engine: persistence, activities, timers and mailboxes."""

from stage_workflow_orchestrator.orchestrator.runtime.service import (
    InstanceDescription,
    InstanceHandle,
    WorkflowService,
)

__all__ = ["InstanceDescription", "InstanceHandle", "WorkflowService"]
