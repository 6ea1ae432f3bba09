"""Unit tests for the pure execution engine."""

from __future__ import annotations

from datetime import timedelta

import pytest

from stage_workflow_orchestrator.orchestrator.errors import (
    FatalEngineError,
    InstanceCancelledError,
    PausedError,
    RequirementsIncompleteError,
    StateConflictError,
    ValidationError,
)
from stage_workflow_orchestrator.orchestrator.workflow.actions import (
    CancelReminders,
    ScheduleReminders,
    SendNotification,
)
from stage_workflow_orchestrator.orchestrator.workflow.audit import AuditEntry
from stage_workflow_orchestrator.orchestrator.workflow.engine import (
    Decision,
    Outcome,
    apply_event,
    fail_instance,
    replay,
    start_instance,
)
from stage_workflow_orchestrator.orchestrator.workflow.events import TimerFired, parse_signal
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import (
    RunState,
    WorkflowInstance,
)

from conftest import LITIGATION, T0


class _Run:
    """Applies signals in sequence and keeps the audit trail, like the runtime does."""

    def __init__(self) -> None:
        decision = start_instance(
            instance_id="case-1-wf",
            template=LITIGATION,
            subject_id="case-1",
            now=T0,
            recipients=["lawyer@example.com"],
        )
        self.instance = decision.instance
        self.audit: list[AuditEntry] = [decision.audit]  # type: ignore[list-item]
        self.now = T0

    def send(self, signal_type: str, payload: dict[str, object], *, hours: float = 1) -> Decision:
        self.now = self.now + timedelta(hours=hours)
        decision = apply_event(
            instance=self.instance,
            template=LITIGATION,
            event=parse_signal(signal_type, payload),
            now=self.now,
        )
        self._keep(decision)
        return decision

    def fire(self, item_id: str, label: str, *, at_days: float) -> Decision:
        self.now = T0 + timedelta(days=at_days)
        decision = apply_event(
            instance=self.instance,
            template=LITIGATION,
            event=TimerFired(item_kind="deadline", item_id=item_id, label=label),
            now=self.now,
        )
        self._keep(decision)
        return decision

    def _keep(self, decision: Decision) -> None:
        if decision.applied:
            self.instance = decision.instance
            self.audit.append(decision.audit)  # type: ignore[arg-type]


@pytest.fixture
def run() -> _Run:
    return _Run()


def _complete(run: _Run, requirement_id: str) -> Decision:
    return run.send("completeRequirement", {"requirementId": requirement_id, "completedBy": "u1"})


def test_start_places_instance_at_initial_stage(run: _Run) -> None:
    inst = run.instance
    assert inst.current_stage_id == "intake"
    assert inst.run_state == RunState.ACTIVE
    assert inst.sequence == 1
    assert len(inst.stage_history) == 1
    assert inst.stage_history[0].exited_at is None


def test_transition_with_incomplete_requirements_leaves_history_unchanged(run: _Run) -> None:
    before = run.instance.model_copy(deep=True)

    with pytest.raises(RequirementsIncompleteError) as excinfo:
        run.send("transitionStage", {"targetStageId": "discovery", "requestedBy": "u1"})

    assert excinfo.value.missing == ["upload-retainer"]
    assert run.instance == before
    assert run.instance.stage_history == before.stage_history


def test_transition_after_completing_requirements(run: _Run) -> None:
    _complete(run, "upload-retainer")
    decision = run.send("transitionStage", {"targetStageId": "discovery", "requestedBy": "u1"})

    inst = decision.instance
    assert inst.current_stage_id == "discovery"
    assert [h.stage_id for h in inst.stage_history] == ["intake", "discovery"]
    intake, discovery = inst.stage_history
    assert intake.exited_at == discovery.entered_at == run.now
    assert intake.duration_hours == 2.0
    assert decision.result == {"from_stage_id": "intake", "to_stage_id": "discovery"}


def test_complete_requirement_twice_is_idempotent(run: _Run) -> None:
    first = _complete(run, "upload-retainer")
    second = _complete(run, "upload-retainer")

    assert first.outcome == Outcome.APPLIED
    assert second.outcome == Outcome.NOOP
    assert second.effects == ()
    assert [r.requirement_id for r in run.instance.completed_requirements] == ["upload-retainer"]


def test_unknown_requirement_and_stage_are_validation_errors(run: _Run) -> None:
    with pytest.raises(ValidationError):
        _complete(run, "not-in-template")
    with pytest.raises(ValidationError):
        run.send("transitionStage", {"targetStageId": "appeal", "requestedBy": "u1"})


def test_transition_to_current_stage_is_a_noop(run: _Run) -> None:
    decision = run.send("transitionStage", {"targetStageId": "intake", "requestedBy": "u1"})
    assert decision.outcome == Outcome.NOOP


def test_skipping_a_stage_needs_force(run: _Run) -> None:
    _complete(run, "upload-retainer")
    with pytest.raises(StateConflictError):
        run.send("transitionStage", {"targetStageId": "trial", "requestedBy": "u1"})

    decision = run.send(
        "transitionStage",
        {"targetStageId": "trial", "requestedBy": "partner", "force": True, "notes": "court order"},
    )
    assert decision.instance.current_stage_id == "trial"
    override = decision.instance.overrides[-1]
    assert (override.from_stage_id, override.to_stage_id) == ("intake", "trial")
    assert override.approved_by == "partner"
    assert decision.instance.stage_history[-1].forced is True


def test_force_overrides_missing_requirements_and_records_them(run: _Run) -> None:
    decision = run.send(
        "transitionStage",
        {"targetStageId": "discovery", "requestedBy": "partner", "force": True, "notes": "waived"},
    )
    assert decision.instance.overrides[-1].missing_requirements == ["upload-retainer"]


def test_paused_rejects_progress_until_resumed(run: _Run) -> None:
    _complete(run, "upload-retainer")
    run.send("pause", {"reason": "client abroad"})

    with pytest.raises(PausedError):
        run.send("transitionStage", {"targetStageId": "discovery", "requestedBy": "u1"})
    with pytest.raises(PausedError):
        _complete(run, "client-photo")
    assert run.send("pause", {}).outcome == Outcome.NOOP

    run.send("resume", {})
    decision = run.send("transitionStage", {"targetStageId": "discovery", "requestedBy": "u1"})
    assert decision.instance.current_stage_id == "discovery"


def test_cancel_cancels_all_timers_and_blocks_later_signals(run: _Run) -> None:
    decision = run.send("cancel", {"reason": "settled"})

    assert decision.instance.run_state == RunState.CANCELLED
    assert decision.instance.cancel_reason == "settled"
    assert CancelReminders(instance_id="case-1-wf") in decision.effects
    with pytest.raises(InstanceCancelledError):
        run.send("resume", {})
    with pytest.raises(InstanceCancelledError):
        _complete(run, "upload-retainer")


def test_reaching_final_stage_with_requirements_met_completes(run: _Run) -> None:
    _complete(run, "upload-retainer")
    run.send("transitionStage", {"targetStageId": "discovery", "requestedBy": "u1"})
    run.send("transitionStage", {"targetStageId": "trial", "requestedBy": "u1"})
    decision = run.send("transitionStage", {"targetStageId": "closed", "requestedBy": "u1"})
    assert decision.instance.run_state == RunState.ACTIVE

    decision = _complete(run, "final-invoice")
    inst = decision.instance
    assert inst.run_state == RunState.COMPLETED
    assert inst.completed_at == run.now
    assert inst.stage_history[-1].exited_at == run.now
    assert decision.result["completed"] is True

    with pytest.raises(StateConflictError):
        run.send("pause", {})


def test_signal_id_replays_are_duplicates(run: _Run) -> None:
    payload = {"title": "Brief", "dueAt": (T0 + timedelta(days=10)).isoformat(), "addedBy": "u1"}
    first = run.send("addDeadline", {**payload, "signalId": "s-1"})
    second = run.send("addDeadline", {**payload, "signalId": "s-1"})

    assert first.outcome == Outcome.APPLIED
    assert second.outcome == Outcome.DUPLICATE
    assert len(run.instance.deadlines) == 1


def test_add_deadline_schedules_reminders_and_supports_natural_key(run: _Run) -> None:
    payload = {
        "deadlineId": "brief",
        "title": "Brief",
        "dueAt": (T0 + timedelta(days=10)).isoformat(),
        "addedBy": "u1",
    }
    decision = run.send("addDeadline", payload)
    schedule = next(e for e in decision.effects if isinstance(e, ScheduleReminders))
    assert [t.label for t in schedule.timers] == ["7d", "3d", "1d", "overdue"]

    assert run.send("addDeadline", payload).outcome == Outcome.NOOP


def test_remove_deadline_cancels_only_that_item(run: _Run) -> None:
    due = (T0 + timedelta(days=10)).isoformat()
    run.send("addDeadline", {"deadlineId": "a", "title": "A", "dueAt": due, "addedBy": "u1"})
    decision = run.send("removeDeadline", {"deadlineId": "a"})

    assert CancelReminders(instance_id="case-1-wf", item_id="a") in decision.effects
    assert decision.instance.find_deadline("a").removed_at is not None  # type: ignore[union-attr]
    assert run.send("removeDeadline", {"deadlineId": "a"}).outcome == Outcome.NOOP
    with pytest.raises(ValidationError):
        run.send("removeDeadline", {"deadlineId": "zzz"})


def test_timer_firing_records_reminder_once(run: _Run) -> None:
    due = (T0 + timedelta(days=10)).isoformat()
    run.send("addDeadline", {"deadlineId": "a", "title": "A", "dueAt": due, "addedBy": "u1"})

    first = run.fire("a", "7d", at_days=3)
    again = run.fire("a", "7d", at_days=3.5)

    assert first.outcome == Outcome.APPLIED
    assert again.outcome == Outcome.NOOP
    assert run.instance.find_deadline("a").reminders_fired == ["7d"]  # type: ignore[union-attr]
    notification = next(e for e in first.effects if isinstance(e, SendNotification))
    assert notification.subject == "Reminder (7d): A"


def test_last_offset_retires_the_item_without_an_overdue_notice(run: _Run) -> None:
    due = (T0 + timedelta(days=10)).isoformat()
    run.send("addDeadline", {"deadlineId": "a", "title": "A", "dueAt": due, "addedBy": "u1"})

    assert not any(isinstance(e, CancelReminders) for e in run.fire("a", "7d", at_days=3).effects)
    run.fire("a", "3d", at_days=7)
    last = run.fire("a", "1d", at_days=9)

    assert CancelReminders(instance_id="case-1-wf", item_id="a") in last.effects
    assert run.fire("a", "overdue", at_days=10).outcome == Outcome.NOOP
    assert run.instance.find_deadline("a").reminders_fired == [  # type: ignore[union-attr]
        "7d",
        "3d",
        "1d",
    ]


def test_timers_keep_firing_while_paused_with_a_notice(run: _Run) -> None:
    due = (T0 + timedelta(days=10)).isoformat()
    run.send("addDeadline", {"deadlineId": "a", "title": "A", "dueAt": due, "addedBy": "u1"})
    run.send("pause", {})

    decision = run.fire("a", "7d", at_days=3)
    notification = next(e for e in decision.effects if isinstance(e, SendNotification))
    assert "paused" in notification.body
    assert decision.result["paused"] is True


def test_timer_for_terminal_instance_is_ignored(run: _Run) -> None:
    due = (T0 + timedelta(days=10)).isoformat()
    run.send("addDeadline", {"deadlineId": "a", "title": "A", "dueAt": due, "addedBy": "u1"})
    run.send("cancel", {"reason": "withdrawn"})

    decision = run.fire("a", "7d", at_days=3)
    assert decision.outcome == Outcome.NOOP
    assert run.instance.find_deadline("a").reminders_fired == []  # type: ignore[union-attr]


def test_escalation_notifies_only_the_escalation_target(run: _Run) -> None:
    decision = run.send(
        "escalate", {"reason": "no response", "escalatedTo": "partner@example.com"}
    )
    escalation = decision.instance.escalations[-1]
    assert escalation.stage_id == "intake"
    notification = next(e for e in decision.effects if isinstance(e, SendNotification))
    assert notification.recipients == ("partner@example.com",)


def test_input_instance_is_never_mutated(run: _Run) -> None:
    original = run.instance
    snapshot = original.model_copy(deep=True)
    _complete(run, "upload-retainer")
    assert original == snapshot


def test_state_that_breaks_an_invariant_is_fatal(run: _Run) -> None:
    broken = run.instance.model_copy(update={"current_stage_id": "nowhere"})
    with pytest.raises(FatalEngineError):
        apply_event(
            instance=broken,
            template=LITIGATION,
            event=parse_signal("pause", {}),
            now=T0,
        )

    decision = fail_instance(instance=broken, template=LITIGATION, reason="bad stage", now=T0)
    assert decision.instance.run_state == RunState.FAILED
    assert decision.instance.failure_reason == "bad stage"


def test_replay_of_the_audit_trail_reproduces_state(run: _Run) -> None:
    due = (T0 + timedelta(days=10)).isoformat()
    _complete(run, "upload-retainer")
    run.send("addDeadline", {"deadlineId": "a", "title": "A", "dueAt": due, "addedBy": "u1"})
    run.send("addCourtDate", {"title": "Hearing", "at": due, "addedBy": "u1"})
    run.send("escalate", {"reason": "slow", "escalatedTo": "partner"})
    run.send("transitionStage", {"targetStageId": "discovery", "requestedBy": "u1"})
    run.fire("a", "7d", at_days=3)
    run.send("pause", {}, hours=80)
    run.send("resume", {})

    rebuilt: WorkflowInstance = replay(template=LITIGATION, entries=reversed(run.audit))
    assert rebuilt == run.instance
