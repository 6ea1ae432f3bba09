"""Effects returned by the engine for the activity executor to carry out.

Effects are plain data. The engine never performs them; the executor maps each
effect type to the collaborator that does the work.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Union

from stage_workflow_orchestrator.orchestrator.workflow.audit import AuditEntry
from stage_workflow_orchestrator.orchestrator.workflow.reminders import ReminderTimer
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import WorkflowInstance


@dataclass(frozen=True, slots=True)
class PersistInstance:
    """Commit the new state and its audit entry together.

    Critical: if this fails the transition did not happen.
    """

    instance: WorkflowInstance
    audit: AuditEntry
    expected_sequence: int

    kind: ClassVar[str] = "persist_instance"
    critical: ClassVar[bool] = True
    background: ClassVar[bool] = False


@dataclass(frozen=True, slots=True)
class ScheduleReminders:
    timers: tuple[ReminderTimer, ...]

    kind: ClassVar[str] = "schedule_reminders"
    critical: ClassVar[bool] = False
    background: ClassVar[bool] = False


@dataclass(frozen=True, slots=True)
class CancelReminders:
    """Drop not-yet-fired timers for one item, or for the whole instance."""

    instance_id: str
    item_id: str | None = None

    kind: ClassVar[str] = "cancel_reminders"
    critical: ClassVar[bool] = False
    background: ClassVar[bool] = False


@dataclass(frozen=True, slots=True)
class SendNotification:
    recipients: tuple[str, ...]
    subject: str
    body: str

    kind: ClassVar[str] = "send_notification"
    critical: ClassVar[bool] = False
    background: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class UpdateSubjectStage:
    subject_id: str
    stage_name: str
    entered_at: datetime

    kind: ClassVar[str] = "update_subject_stage"
    critical: ClassVar[bool] = False
    background: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class AppendSubjectNote:
    subject_id: str
    text: str

    kind: ClassVar[str] = "append_subject_note"
    critical: ClassVar[bool] = False
    background: ClassVar[bool] = True


Effect = Union[
    PersistInstance,
    ScheduleReminders,
    CancelReminders,
    SendNotification,
    UpdateSubjectStage,
    AppendSubjectNote,
]


def activity_key(instance_id: str, event_type: str, sequence: int, index: int) -> str:
    """Dedupe key for one effect of one applied event."""

    return f"{instance_id}:{event_type}:{sequence}:{index}"
