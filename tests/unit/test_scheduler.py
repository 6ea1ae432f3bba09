"""Unit tests for the in-memory timer index."""

from __future__ import annotations

from datetime import timedelta

from stage_workflow_orchestrator.orchestrator.runtime.scheduler import ReminderScheduler
from stage_workflow_orchestrator.orchestrator.workflow.reminders import ReminderTimer
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import (
    Deadline,
    WorkflowInstance,
)

from conftest import T0


def _timer(instance_id: str, item_id: str, label: str, days: float) -> ReminderTimer:
    return ReminderTimer(
        instance_id=instance_id,
        item_kind="deadline",
        item_id=item_id,
        label=label,
        fire_at=T0 + timedelta(days=days),
    )


def test_schedule_is_keyed_and_due_pops_in_order() -> None:
    scheduler = ReminderScheduler()
    assert scheduler.schedule([_timer("i1", "a", "3d", 7), _timer("i1", "a", "7d", 3)]) == 2
    assert scheduler.schedule([_timer("i1", "a", "7d", 3)]) == 0
    assert len(scheduler) == 2

    assert scheduler.due(T0 + timedelta(days=1)) == []
    due = scheduler.due(T0 + timedelta(days=8))
    assert [t.label for t in due] == ["7d", "3d"]
    assert len(scheduler) == 0


def test_cancel_by_item_or_instance() -> None:
    scheduler = ReminderScheduler()
    scheduler.schedule(
        [_timer("i1", "a", "7d", 3), _timer("i1", "b", "7d", 4), _timer("i2", "a", "7d", 5)]
    )

    assert scheduler.cancel("i1", "a") == 1
    assert [t.item_id for t in scheduler.pending("i1")] == ["b"]
    assert scheduler.cancel("i1") == 1
    assert [t.instance_id for t in scheduler.pending()] == ["i2"]


def test_rebuild_uses_persisted_reminder_state() -> None:
    instance = WorkflowInstance(
        instance_id="i1",
        template_id="litigation",
        subject_id="case-1",
        current_stage_id="intake",
        created_at=T0,
        updated_at=T0,
        deadlines=[
            Deadline(
                deadline_id="a",
                title="Brief",
                due_at=T0 + timedelta(days=10),
                added_at=T0,
                reminders_scheduled=["7d", "3d", "1d"],
                reminders_fired=["7d"],
            )
        ],
    )
    scheduler = ReminderScheduler()
    scheduler.schedule([_timer("i1", "stale", "7d", 1)])

    assert scheduler.rebuild(instance) == 3
    assert [t.label for t in scheduler.pending("i1")] == ["3d", "1d", "overdue"]
