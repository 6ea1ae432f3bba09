"""The execution engine: ``(state, event) -> (state', effects)``.

The engine is synchronous and deterministic. It never performs I/O: it works on a
copy of the instance, and everything that has to happen in the outside world is
returned as effects for the activity executor. Identifiers it generates are derived
from ``(instance_id, sequence)`` so that re-applying the audited events reproduces
the same state.

Signal handling is a table of named handlers rather than a class hierarchy; every
workflow kind (case, onboarding, offboarding) runs through the same table and is
parameterised only by its template.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import JsonValue

from stage_workflow_orchestrator.orchestrator.errors import (
    FatalEngineError,
    InstanceCancelledError,
    PausedError,
    RequirementsIncompleteError,
    StateConflictError,
    ValidationError,
)
from stage_workflow_orchestrator.orchestrator.templates import StageDefinition, WorkflowTemplate
from stage_workflow_orchestrator.orchestrator.workflow.actions import (
    AppendSubjectNote,
    CancelReminders,
    Effect,
    PersistInstance,
    ScheduleReminders,
    SendNotification,
    UpdateSubjectStage,
)
from stage_workflow_orchestrator.orchestrator.workflow.audit import (
    AuditEntry,
    ResultStatus,
    signal_entry_id,
)
from stage_workflow_orchestrator.orchestrator.workflow.events import (
    AddCourtDate,
    AddDeadline,
    Cancel,
    CompleteRequirement,
    Escalate,
    Pause,
    RemoveCourtDate,
    RemoveDeadline,
    Resume,
    Signal,
    TimerFired,
    TransitionStage,
    parse_signal,
)
from stage_workflow_orchestrator.orchestrator.workflow.reminders import (
    OVERDUE,
    ItemKind,
    item_timers,
    offsets_to_schedule,
    resolve_firing,
)
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import (
    CompletedRequirement,
    CourtDate,
    Deadline,
    Escalation,
    RunState,
    StageHistoryEntry,
    StageOverride,
    WorkflowInstance,
    as_utc,
    transition_run_state,
)

START_EVENT = "start"
FAIL_EVENT = "fail"

# Blocked while paused. Everything else (calendar items, escalations) keeps working.
_PAUSE_BLOCKED: frozenset[str] = frozenset({"completeRequirement", "transitionStage"})


class Outcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NOOP = "noop"


@dataclass(frozen=True, slots=True)
class Decision:
    """What the engine decided for one event."""

    instance: WorkflowInstance
    outcome: Outcome
    event_type: str
    effects: tuple[Effect, ...] = ()
    audit: AuditEntry | None = None
    result: dict[str, JsonValue] = field(default_factory=dict)
    detail: str = ""

    @property
    def applied(self) -> bool:
        return self.outcome == Outcome.APPLIED


@dataclass
class _Transition:
    instance: WorkflowInstance
    template: WorkflowTemplate
    now: datetime
    sequence: int
    effects: list[Effect] = field(default_factory=list)
    result: dict[str, JsonValue] = field(default_factory=dict)
    skipped: str | None = None

    def new_id(self, prefix: str) -> str:
        name = f"workflow:{self.instance.instance_id}:{self.sequence}:{prefix}"
        return f"{prefix}-{uuid.uuid5(uuid.NAMESPACE_URL, name).hex[:12]}"

    def skip(self, reason: str) -> None:
        self.skipped = reason

    def notify(self, subject: str, body: str, recipients: Sequence[str] | None = None) -> None:
        to = tuple(recipients if recipients is not None else self.instance.recipients)
        if to:
            self.effects.append(SendNotification(recipients=to, subject=subject, body=body))


Handler = Callable[[_Transition, Any], None]
_HANDLERS: dict[str, Handler] = {}


def _handles(event_type: str) -> Callable[[Handler], Handler]:
    def register(fn: Handler) -> Handler:
        _HANDLERS[event_type] = fn
        return fn

    return register


def check_integrity(*, instance: WorkflowInstance, template: WorkflowTemplate) -> None:
    """Raise FatalEngineError if persisted state breaks an engine invariant."""

    if instance.template_id != template.template_id:
        raise FatalEngineError(
            f"Instance {instance.instance_id} is bound to template {instance.template_id!r}, "
            f"not {template.template_id!r}"
        )
    if not template.has_stage(instance.current_stage_id):
        raise FatalEngineError(
            f"Current stage {instance.current_stage_id!r} is not in template "
            f"{template.template_id!r}"
        )
    for entry in instance.stage_history:
        if entry.exited_at is not None and entry.exited_at < entry.entered_at:
            raise FatalEngineError(
                f"Stage history entry for {entry.stage_id!r} exits before it was entered"
            )


def _guard_run_state(instance: WorkflowInstance, event_type: str) -> None:
    state = instance.run_state
    if state == RunState.ACTIVE:
        return
    if state == RunState.PAUSED:
        if event_type in _PAUSE_BLOCKED:
            raise PausedError(f"Instance {instance.instance_id} is paused; {event_type} rejected")
        return
    if state == RunState.CANCELLED:
        raise InstanceCancelledError(f"Instance {instance.instance_id} is cancelled")
    raise StateConflictError(f"Instance {instance.instance_id} is {state.value}")


def _finish(
    tx: _Transition,
    *,
    event_type: str,
    actor_id: str,
    signal: dict[str, JsonValue],
    signal_id: str | None,
) -> Decision:
    instance = tx.instance
    expected_sequence = tx.sequence - 1
    instance.sequence = tx.sequence
    instance.updated_at = tx.now
    if signal_id is not None:
        instance.applied_signal_ids.append(signal_id)

    audit = AuditEntry(
        entry_id=signal_entry_id(instance.instance_id, tx.sequence, event_type),
        instance_id=instance.instance_id,
        sequence=tx.sequence,
        timestamp=tx.now,
        actor_id=actor_id,
        event_type=event_type,
        payload={"signal": signal, "result": tx.result},
        result_status=ResultStatus.APPLIED,
    )
    persist = PersistInstance(instance=instance, audit=audit, expected_sequence=expected_sequence)
    return Decision(
        instance=instance,
        outcome=Outcome.APPLIED,
        event_type=event_type,
        effects=(persist, *tx.effects),
        audit=audit,
        result=dict(tx.result),
    )


def apply_event(
    *,
    instance: WorkflowInstance,
    template: WorkflowTemplate,
    event: Signal | TimerFired,
    now: datetime,
) -> Decision:
    """Apply one signal or timer firing to ``instance``.

    The input instance is never mutated.

    Raises:
        ValidationError: the event references something that does not exist.
        StateConflictError: the event is not legal in the current run state/stage.
        RequirementsIncompleteError: the current stage still has unmet requirements.
        FatalEngineError: the persisted instance breaks an invariant.
    """

    now = as_utc(now)
    check_integrity(instance=instance, template=template)

    if event.signal_id is not None and event.signal_id in instance.applied_signal_ids:
        return Decision(
            instance=instance,
            outcome=Outcome.DUPLICATE,
            event_type=event.type,
            detail=f"signal {event.signal_id} already applied",
        )

    handler = _HANDLERS.get(event.type)
    if handler is None:
        raise ValidationError(f"No handler for event type {event.type!r}")

    if isinstance(event, TimerFired):
        if instance.is_terminal:
            return Decision(
                instance=instance,
                outcome=Outcome.NOOP,
                event_type=event.type,
                detail=f"instance is {instance.run_state.value}",
            )
    else:
        _guard_run_state(instance, event.type)

    tx = _Transition(
        instance=instance.model_copy(deep=True),
        template=template,
        now=now,
        sequence=instance.sequence + 1,
    )
    handler(tx, event)

    if tx.skipped is not None:
        return Decision(
            instance=instance, outcome=Outcome.NOOP, event_type=event.type, detail=tx.skipped
        )
    return _finish(
        tx,
        event_type=event.type,
        actor_id=event.actor_id,
        signal=event.model_dump(mode="json"),
        signal_id=event.signal_id,
    )


def start_instance(
    *,
    instance_id: str,
    template: WorkflowTemplate,
    subject_id: str,
    now: datetime,
    recipients: Iterable[str] = (),
    started_by: str = "system",
) -> Decision:
    """Create a new instance at the template's initial stage."""

    now = as_utc(now)
    stage = template.initial_stage
    instance = WorkflowInstance(
        instance_id=instance_id,
        template_id=template.template_id,
        subject_id=subject_id,
        current_stage_id=stage.stage_id,
        stage_history=[
            StageHistoryEntry(
                stage_id=stage.stage_id, name=stage.name, entered_at=now, entered_by=started_by
            )
        ],
        recipients=list(recipients),
        created_at=now,
        updated_at=now,
    )
    tx = _Transition(instance=instance, template=template, now=now, sequence=1)
    tx.effects.append(
        UpdateSubjectStage(subject_id=subject_id, stage_name=stage.name, entered_at=now)
    )
    tx.notify(
        f"{template.name or template.template_id} started",
        f"Workflow {instance_id} started for {subject_id} at stage {stage.name}.",
    )
    _maybe_complete(tx)
    signal: dict[str, JsonValue] = {
        "template_id": template.template_id,
        "subject_id": subject_id,
        "recipients": list(instance.recipients),
        "started_by": started_by,
    }
    return _finish(tx, event_type=START_EVENT, actor_id=started_by, signal=signal, signal_id=None)


def fail_instance(
    *, instance: WorkflowInstance, template: WorkflowTemplate, reason: str, now: datetime
) -> Decision:
    """Move any instance to Failed. Skips integrity checks on purpose."""

    now = as_utc(now)
    if instance.run_state == RunState.FAILED:
        return Decision(
            instance=instance, outcome=Outcome.NOOP, event_type=FAIL_EVENT, detail="already failed"
        )
    tx = _Transition(
        instance=instance.model_copy(deep=True),
        template=template,
        now=now,
        sequence=instance.sequence + 1,
    )
    transition_run_state(instance=tx.instance, to=RunState.FAILED)
    tx.instance.failure_reason = reason
    tx.effects.append(CancelReminders(instance_id=instance.instance_id))
    tx.notify(
        "Workflow failed",
        f"Workflow {instance.instance_id} failed and needs operator attention: {reason}",
    )
    return _finish(
        tx, event_type=FAIL_EVENT, actor_id="engine", signal={"reason": reason}, signal_id=None
    )


def _close_open_entry(tx: _Transition) -> None:
    entry = tx.instance.open_history_entry()
    if entry is None:
        return
    exited_at = max(tx.now, entry.entered_at)
    entry.exited_at = exited_at
    entry.duration_hours = round((exited_at - entry.entered_at).total_seconds() / 3600, 4)


def _enter_stage(
    tx: _Transition, stage: StageDefinition, *, entered_by: str, notes: str, forced: bool
) -> None:
    _close_open_entry(tx)
    tx.instance.stage_history.append(
        StageHistoryEntry(
            stage_id=stage.stage_id,
            name=stage.name,
            entered_at=tx.now,
            entered_by=entered_by,
            notes=notes,
            forced=forced,
        )
    )
    tx.instance.current_stage_id = stage.stage_id


def _maybe_complete(tx: _Transition) -> None:
    inst = tx.instance
    final = tx.template.final_stage
    if inst.run_state != RunState.ACTIVE or inst.current_stage_id != final.stage_id:
        return
    if tx.template.missing_requirements(final.stage_id, inst.completed_requirement_ids):
        return

    transition_run_state(instance=inst, to=RunState.COMPLETED)
    inst.completed_at = tx.now
    _close_open_entry(tx)
    tx.effects.append(CancelReminders(instance_id=inst.instance_id))
    tx.notify(
        "Workflow completed",
        f"Workflow {inst.instance_id} for {inst.subject_id} completed at stage {final.name}.",
    )
    tx.result["completed"] = True


@_handles("completeRequirement")
def _complete_requirement(tx: _Transition, ev: CompleteRequirement) -> None:
    if ev.requirement_id in tx.instance.completed_requirement_ids:
        tx.skip(f"requirement {ev.requirement_id} already completed")
        return
    try:
        stage, requirement = tx.template.find_requirement(ev.requirement_id)
    except KeyError:
        raise ValidationError(
            f"Requirement {ev.requirement_id!r} is not part of template {tx.template.template_id!r}"
        ) from None

    tx.instance.completed_requirements.append(
        CompletedRequirement(
            requirement_id=ev.requirement_id,
            name=ev.name or requirement.name,
            stage_id=stage.stage_id,
            completed_by=ev.completed_by,
            completed_at=tx.now,
            metadata=dict(ev.metadata),
        )
    )
    _maybe_complete(tx)


@_handles("transitionStage")
def _transition_stage(tx: _Transition, ev: TransitionStage) -> None:
    inst = tx.instance
    template = tx.template
    if not template.has_stage(ev.target_stage_id):
        raise ValidationError(
            f"Stage {ev.target_stage_id!r} is not part of template {template.template_id!r}"
        )
    if ev.target_stage_id == inst.current_stage_id:
        tx.skip(f"already at stage {ev.target_stage_id}")
        return

    current = inst.current_stage_id
    missing = template.missing_requirements(current, inst.completed_requirement_ids)
    if missing and not ev.force:
        raise RequirementsIncompleteError(current, missing)

    following = template.next_stage(current)
    if not ev.force and (following is None or following.stage_id != ev.target_stage_id):
        raise StateConflictError(
            f"Stage {ev.target_stage_id!r} does not follow {current!r}; use force to override"
        )

    if ev.force:
        inst.overrides.append(
            StageOverride(
                at=tx.now,
                from_stage_id=current,
                to_stage_id=ev.target_stage_id,
                reason=ev.notes,
                approved_by=ev.requested_by,
                missing_requirements=missing,
            )
        )

    target = template.stage(ev.target_stage_id)
    _enter_stage(tx, target, entered_by=ev.requested_by, notes=ev.notes, forced=ev.force)
    tx.result.update({"from_stage_id": current, "to_stage_id": target.stage_id})

    tx.effects.append(
        UpdateSubjectStage(subject_id=inst.subject_id, stage_name=target.name, entered_at=tx.now)
    )
    if ev.notes:
        prefix = "Forced stage change" if ev.force else "Stage change"
        tx.effects.append(
            AppendSubjectNote(
                subject_id=inst.subject_id, text=f"{prefix} to {target.name}: {ev.notes}"
            )
        )
    tx.notify(
        f"Stage changed to {target.name}",
        f"Workflow {inst.instance_id} moved from {template.stage(current).name} to "
        f"{target.name} (requested by {ev.requested_by}).",
    )
    _maybe_complete(tx)


def _add_item(tx: _Transition, kind: ItemKind, item: Deadline | CourtDate) -> None:
    tx.effects.append(
        ScheduleReminders(timers=tuple(item_timers(tx.instance.instance_id, kind, item)))
    )
    tx.result.update({"item_kind": kind, "item_id": item.item_id})


@_handles("addDeadline")
def _add_deadline(tx: _Transition, ev: AddDeadline) -> None:
    deadline_id = ev.deadline_id or tx.new_id("deadline")
    if tx.instance.find_deadline(deadline_id) is not None:
        tx.skip(f"deadline {deadline_id} already exists")
        return
    deadline = Deadline(
        deadline_id=deadline_id,
        title=ev.title,
        description=ev.description,
        due_at=ev.due_at,
        added_by=ev.added_by,
        added_at=tx.now,
        reminders_scheduled=offsets_to_schedule("deadline", ev.due_at, tx.now),
    )
    tx.instance.deadlines.append(deadline)
    _add_item(tx, "deadline", deadline)


@_handles("addCourtDate")
def _add_court_date(tx: _Transition, ev: AddCourtDate) -> None:
    event_id = ev.event_id or tx.new_id("court")
    if tx.instance.find_court_date(event_id) is not None:
        tx.skip(f"court date {event_id} already exists")
        return
    court_date = CourtDate(
        event_id=event_id,
        title=ev.title,
        at=ev.at,
        location=ev.location,
        notes=ev.notes,
        added_by=ev.added_by,
        added_at=tx.now,
        reminders_scheduled=offsets_to_schedule("court_date", ev.at, tx.now),
    )
    tx.instance.court_dates.append(court_date)
    _add_item(tx, "court_date", court_date)


def _remove_item(
    tx: _Transition, kind: ItemKind, item: Deadline | CourtDate | None, item_id: str
) -> None:
    if item is None:
        raise ValidationError(f"No {kind.replace('_', ' ')} with id {item_id!r}")
    if item.removed_at is not None:
        tx.skip(f"{kind} {item_id} already removed")
        return
    item.removed_at = tx.now
    tx.effects.append(CancelReminders(instance_id=tx.instance.instance_id, item_id=item_id))
    tx.result.update({"item_kind": kind, "item_id": item_id})


@_handles("removeDeadline")
def _remove_deadline(tx: _Transition, ev: RemoveDeadline) -> None:
    _remove_item(tx, "deadline", tx.instance.find_deadline(ev.deadline_id), ev.deadline_id)


@_handles("removeCourtDate")
def _remove_court_date(tx: _Transition, ev: RemoveCourtDate) -> None:
    _remove_item(tx, "court_date", tx.instance.find_court_date(ev.event_id), ev.event_id)


@_handles("pause")
def _pause(tx: _Transition, ev: Pause) -> None:
    if tx.instance.run_state == RunState.PAUSED:
        tx.skip("already paused")
        return
    transition_run_state(instance=tx.instance, to=RunState.PAUSED)
    reason = f": {ev.reason}" if ev.reason else ""
    tx.notify(
        "Workflow paused",
        f"Workflow {tx.instance.instance_id} was paused by {ev.requested_by}{reason}.",
    )


@_handles("resume")
def _resume(tx: _Transition, ev: Resume) -> None:
    if tx.instance.run_state == RunState.ACTIVE:
        tx.skip("already active")
        return
    transition_run_state(instance=tx.instance, to=RunState.ACTIVE)
    tx.notify(
        "Workflow resumed",
        f"Workflow {tx.instance.instance_id} was resumed by {ev.requested_by}.",
    )


@_handles("cancel")
def _cancel(tx: _Transition, ev: Cancel) -> None:
    inst = tx.instance
    transition_run_state(instance=inst, to=RunState.CANCELLED)
    inst.cancel_reason = ev.reason
    tx.effects.append(CancelReminders(instance_id=inst.instance_id))
    tx.effects.append(
        AppendSubjectNote(subject_id=inst.subject_id, text=f"Workflow cancelled: {ev.reason}")
    )
    tx.notify(
        "Workflow cancelled",
        f"Workflow {inst.instance_id} was cancelled by {ev.requested_by}: {ev.reason}",
    )


@_handles("escalate")
def _escalate(tx: _Transition, ev: Escalate) -> None:
    inst = tx.instance
    escalation = Escalation(
        escalation_id=tx.new_id("escalation"),
        at=tx.now,
        stage_id=inst.current_stage_id,
        reason=ev.reason,
        escalated_to=ev.escalated_to,
        escalated_by=ev.requested_by,
    )
    inst.escalations.append(escalation)
    stage_name = tx.template.stage(inst.current_stage_id).name
    tx.notify(
        f"Escalation: {stage_name}",
        f"Workflow {inst.instance_id} for {inst.subject_id} was escalated at stage {stage_name}: "
        f"{ev.reason}",
        recipients=[ev.escalated_to],
    )
    tx.result["escalation_id"] = escalation.escalation_id


@_handles("timerFired")
def _timer_fired(tx: _Transition, ev: TimerFired) -> None:
    inst = tx.instance
    item: Deadline | CourtDate | None
    if ev.item_kind == "deadline":
        item = inst.find_deadline(ev.item_id)
    else:
        item = inst.find_court_date(ev.item_id)
    if item is None:
        tx.skip(f"unknown {ev.item_kind} {ev.item_id}")
        return

    label = resolve_firing(ev.item_kind, item, ev.label, tx.now)
    if label is None:
        tx.skip(f"{ev.item_kind} {ev.item_id} owes no {ev.label} reminder")
        return

    item.reminders_fired.append(label)
    paused = inst.run_state == RunState.PAUSED
    when = item.target_at.isoformat()
    if label == OVERDUE:
        subject = f"Overdue: {item.title}"
        body = f"{item.title} was due at {when} and is now overdue."
    elif ev.item_kind == "deadline":
        subject = f"Reminder ({label}): {item.title}"
        body = f"{item.title} is due at {when}."
    else:
        subject = f"Court date reminder ({label}): {item.title}"
        location = f" at {item.location}" if isinstance(item, CourtDate) and item.location else ""
        body = f"{item.title} is scheduled for {when}{location}."
    if paused:
        body += " Note: this workflow is paused; calendar reminders still apply."

    if not item_timers(inst.instance_id, ev.item_kind, item):
        tx.effects.append(CancelReminders(instance_id=inst.instance_id, item_id=item.item_id))
    tx.notify(subject, body)
    tx.result.update(
        {"item_kind": ev.item_kind, "item_id": item.item_id, "label": label, "paused": paused}
    )


def replay(*, template: WorkflowTemplate, entries: Iterable[AuditEntry]) -> WorkflowInstance:
    """Rebuild an instance by re-applying its audited events through the engine."""

    instance: WorkflowInstance | None = None
    signal_entries = sorted((e for e in entries if not e.is_activity), key=lambda e: e.sequence)
    for entry in signal_entries:
        raw = entry.payload.get("signal")
        if not isinstance(raw, dict):
            raise FatalEngineError(f"Audit entry {entry.entry_id} has no signal payload")

        if entry.event_type == START_EVENT:
            recipients = raw.get("recipients")
            decision = start_instance(
                instance_id=entry.instance_id,
                template=template,
                subject_id=str(raw.get("subject_id", "")),
                recipients=[str(r) for r in recipients] if isinstance(recipients, list) else [],
                started_by=str(raw.get("started_by", "system")),
                now=entry.timestamp,
            )
        elif instance is None:
            raise FatalEngineError(
                f"Audit ledger for {entry.instance_id} does not begin with start"
            )
        elif entry.event_type == FAIL_EVENT:
            decision = fail_instance(
                instance=instance,
                template=template,
                reason=str(raw.get("reason", "")),
                now=entry.timestamp,
            )
        else:
            payload = {k: v for k, v in raw.items() if k != "type"}
            event: Signal | TimerFired
            if entry.event_type == "timerFired":
                event = TimerFired.model_validate(payload)
            else:
                event = parse_signal(entry.event_type, payload)
            decision = apply_event(
                instance=instance, template=template, event=event, now=entry.timestamp
            )

        if not decision.applied:
            raise FatalEngineError(
                f"Audit entry {entry.entry_id} did not re-apply: {decision.detail}"
            )
        instance = decision.instance

    if instance is None:
        raise FatalEngineError("Audit ledger is empty")
    return instance
