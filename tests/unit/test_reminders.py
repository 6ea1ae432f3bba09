"""Unit tests for reminder timing rules."""

from __future__ import annotations

from datetime import timedelta

from stage_workflow_orchestrator.orchestrator.workflow.reminders import (
    OVERDUE,
    fire_time,
    item_timers,
    offsets_to_schedule,
    resolve_firing,
)
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import CourtDate, Deadline

from conftest import T0


def _deadline(days: float, *, fired: list[str] | None = None) -> Deadline:
    due = T0 + timedelta(days=days)
    return Deadline(
        deadline_id="d1",
        title="File brief",
        due_at=due,
        added_at=T0,
        reminders_scheduled=offsets_to_schedule("deadline", due, T0),
        reminders_fired=fired or [],
    )


def test_ten_day_deadline_schedules_three_offsets_plus_overdue() -> None:
    deadline = _deadline(10)
    assert deadline.reminders_scheduled == ["7d", "3d", "1d"]

    timers = item_timers("i1", "deadline", deadline)
    assert [t.label for t in timers] == ["7d", "3d", "1d", OVERDUE]
    assert [t.fire_at - T0 for t in timers] == [
        timedelta(days=3),
        timedelta(days=7),
        timedelta(days=9),
        timedelta(days=10),
    ]


def test_offsets_already_past_are_not_scheduled() -> None:
    assert offsets_to_schedule("deadline", T0 + timedelta(days=2), T0) == ["1d"]
    assert offsets_to_schedule("deadline", T0 + timedelta(hours=12), T0) == []
    assert offsets_to_schedule("court_date", T0 + timedelta(hours=30), T0) == ["24h"]


def test_fired_and_removed_items_owe_nothing_more() -> None:
    deadline = _deadline(10, fired=["7d"])
    assert [t.label for t in item_timers("i1", "deadline", deadline)] == ["3d", "1d", OVERDUE]

    deadline.removed_at = T0
    assert item_timers("i1", "deadline", deadline) == []


def test_firing_before_its_time_is_ignored() -> None:
    deadline = _deadline(10)
    assert resolve_firing("deadline", deadline, "7d", T0 + timedelta(days=2)) is None
    assert resolve_firing("deadline", deadline, "7d", T0 + timedelta(days=3)) == "7d"


def test_late_offsets_collapse_into_a_single_overdue_event() -> None:
    deadline = _deadline(10)
    late = T0 + timedelta(days=11)

    assert resolve_firing("deadline", deadline, "3d", late) == OVERDUE
    deadline.reminders_fired.append(OVERDUE)
    assert resolve_firing("deadline", deadline, "1d", late) is None
    assert resolve_firing("deadline", deadline, OVERDUE, late) is None


def test_past_court_dates_fire_nothing() -> None:
    at = T0 + timedelta(days=3)
    court = CourtDate(
        event_id="c1",
        title="Hearing",
        at=at,
        added_at=T0,
        reminders_scheduled=offsets_to_schedule("court_date", at, T0),
    )
    assert court.reminders_scheduled == ["48h", "24h"]
    assert fire_time("court_date", at, "48h") == at - timedelta(hours=48)
    assert [t.label for t in item_timers("i1", "court_date", court)] == ["48h", "24h"]

    assert resolve_firing("court_date", court, "24h", at + timedelta(minutes=1)) is None
    assert resolve_firing("court_date", court, "48h", at - timedelta(hours=40)) == "48h"


def test_overdue_is_owed_only_while_an_offset_is_unfired() -> None:
    deadline = _deadline(10, fired=["7d", "3d", "1d"])
    assert item_timers("i1", "deadline", deadline) == []
    assert resolve_firing("deadline", deadline, OVERDUE, T0 + timedelta(days=10)) is None

    deadline.reminders_fired = ["7d", "3d"]
    assert resolve_firing("deadline", deadline, OVERDUE, T0 + timedelta(days=10)) == OVERDUE


def test_deadline_too_close_for_any_offset_still_gets_an_overdue_notice() -> None:
    deadline = _deadline(0.5)
    assert deadline.reminders_scheduled == []

    assert [t.label for t in item_timers("i1", "deadline", deadline)] == [OVERDUE]
    assert resolve_firing("deadline", deadline, OVERDUE, T0 + timedelta(days=1)) == OVERDUE
