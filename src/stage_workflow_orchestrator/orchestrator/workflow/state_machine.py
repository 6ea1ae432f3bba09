from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, JsonValue

from stage_workflow_orchestrator.orchestrator.errors import StateConflictError


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """Normalise a datetime to UTC, treating naive values as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class RunState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_RUN_STATES: frozenset[RunState] = frozenset(
    {RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED}
)

# Any state may additionally move to FAILED; see transition_run_state.
ALLOWED_RUN_STATE_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.ACTIVE: {RunState.PAUSED, RunState.COMPLETED, RunState.CANCELLED},
    RunState.PAUSED: {RunState.ACTIVE, RunState.CANCELLED},
    RunState.COMPLETED: set(),
    RunState.CANCELLED: set(),
    RunState.FAILED: set(),
}


class StageHistoryEntry(BaseModel):
    stage_id: str
    name: str
    entered_at: datetime
    exited_at: datetime | None = None
    duration_hours: float | None = None
    entered_by: str = ""
    notes: str = ""
    forced: bool = False


class CompletedRequirement(BaseModel):
    requirement_id: str
    name: str = ""
    stage_id: str = ""
    completed_by: str
    completed_at: datetime
    metadata: dict[str, JsonValue] = Field(default_factory=dict)


class Deadline(BaseModel):
    deadline_id: str
    title: str
    description: str = ""
    due_at: datetime
    added_by: str = ""
    added_at: datetime
    reminders_scheduled: list[str] = Field(default_factory=list)
    reminders_fired: list[str] = Field(default_factory=list)
    removed_at: datetime | None = None

    @property
    def item_id(self) -> str:
        return self.deadline_id

    @property
    def target_at(self) -> datetime:
        return self.due_at


class CourtDate(BaseModel):
    event_id: str
    title: str
    at: datetime
    location: str = ""
    notes: str = ""
    added_by: str = ""
    added_at: datetime
    reminders_scheduled: list[str] = Field(default_factory=list)
    reminders_fired: list[str] = Field(default_factory=list)
    removed_at: datetime | None = None

    @property
    def item_id(self) -> str:
        return self.event_id

    @property
    def target_at(self) -> datetime:
        return self.at


class Escalation(BaseModel):
    escalation_id: str
    at: datetime
    stage_id: str
    reason: str
    escalated_to: str
    escalated_by: str = ""


class StageOverride(BaseModel):
    """A forced stage transition and the justification recorded for it."""

    at: datetime
    from_stage_id: str
    to_stage_id: str
    reason: str
    approved_by: str
    missing_requirements: list[str] = Field(default_factory=list)


class WorkflowInstance(BaseModel):
    """Execution state of one workflow instance.

    Only the engine produces new versions of this model; everything else reads it.
    """

    instance_id: str
    template_id: str
    subject_id: str
    current_stage_id: str
    run_state: RunState = RunState.ACTIVE
    stage_history: list[StageHistoryEntry] = Field(default_factory=list)
    completed_requirements: list[CompletedRequirement] = Field(default_factory=list)
    deadlines: list[Deadline] = Field(default_factory=list)
    court_dates: list[CourtDate] = Field(default_factory=list)
    escalations: list[Escalation] = Field(default_factory=list)
    overrides: list[StageOverride] = Field(default_factory=list)
    recipients: list[str] = Field(default_factory=list)

    sequence: int = 0
    applied_signal_ids: list[str] = Field(default_factory=list)

    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    cancel_reason: str | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.run_state in TERMINAL_RUN_STATES

    @property
    def completed_requirement_ids(self) -> set[str]:
        return {r.requirement_id for r in self.completed_requirements}

    def open_history_entry(self) -> StageHistoryEntry | None:
        if self.stage_history and self.stage_history[-1].exited_at is None:
            return self.stage_history[-1]
        return None

    def find_deadline(self, deadline_id: str) -> Deadline | None:
        return next((d for d in self.deadlines if d.deadline_id == deadline_id), None)

    def find_court_date(self, event_id: str) -> CourtDate | None:
        return next((c for c in self.court_dates if c.event_id == event_id), None)


def transition_run_state(*, instance: WorkflowInstance, to: RunState) -> None:
    """Move ``instance`` to ``to`` or raise if the move is not allowed."""

    if to == RunState.FAILED and instance.run_state != RunState.FAILED:
        instance.run_state = to
        return
    allowed = ALLOWED_RUN_STATE_TRANSITIONS.get(instance.run_state, set())
    if to not in allowed:
        raise StateConflictError(
            f"Illegal run state transition: {instance.run_state.value} -> {to.value}"
        )
    instance.run_state = to
