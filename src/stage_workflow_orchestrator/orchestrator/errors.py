"""Typed errors raised by the workflow engine and its runtime.

Every error carries a machine-readable ``code`` so callers can decide whether to
retry, force or abort without parsing messages.
"""

from __future__ import annotations

from collections.abc import Sequence


class WorkflowError(Exception):
    code: str = "WORKFLOW_ERROR"


class ValidationError(WorkflowError):
    """A signal or template payload is malformed. Nothing was changed."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, errors: Sequence[object] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class StateConflictError(WorkflowError):
    """The signal is not legal for the instance's current run state or stage."""

    code = "STATE_CONFLICT"


class PausedError(StateConflictError):
    code = "PAUSED"


class InstanceCancelledError(StateConflictError):
    code = "CANCELLED"


class RequirementsIncompleteError(WorkflowError):
    """The current stage still has unmet required requirements."""

    code = "REQUIREMENTS_INCOMPLETE"

    def __init__(self, stage_id: str, missing: Sequence[str]) -> None:
        self.stage_id = stage_id
        self.missing = list(missing)
        super().__init__(
            f"Stage {stage_id!r} has incomplete requirements: {', '.join(self.missing)}"
        )


class TransientInfraError(WorkflowError):
    """An infrastructure call failed in a way that is worth retrying."""

    code = "TRANSIENT_INFRA"


class ActivityError(WorkflowError):
    """An activity failed permanently (retrying will not help)."""

    code = "ACTIVITY_FAILED"


class FatalEngineError(WorkflowError):
    """Persisted state is unreadable or breaks an invariant.

    The instance is moved to Failed and needs operator intervention.
    """

    code = "FATAL_ENGINE"


class InstanceNotFoundError(WorkflowError):
    code = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Workflow instance not found: {instance_id}")


class TemplateNotFoundError(WorkflowError):
    code = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Workflow template not found: {template_id}")
