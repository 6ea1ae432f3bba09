"""Reminder offsets and the rules for when a reminder may fire.

Everything here is derived from persisted item state plus wall-clock time, so the
timer index can be rebuilt after a crash without losing or repeating a reminder.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from stage_workflow_orchestrator.orchestrator.workflow.state_machine import (
    CourtDate,
    Deadline,
    WorkflowInstance,
)

ItemKind = Literal["deadline", "court_date"]

DEADLINE_OFFSETS: tuple[tuple[str, timedelta], ...] = (
    ("7d", timedelta(days=7)),
    ("3d", timedelta(days=3)),
    ("1d", timedelta(days=1)),
)
COURT_DATE_OFFSETS: tuple[tuple[str, timedelta], ...] = (
    ("48h", timedelta(hours=48)),
    ("24h", timedelta(hours=24)),
)
OVERDUE = "overdue"


@dataclass(frozen=True, slots=True)
class ReminderTimer:
    instance_id: str
    item_kind: ItemKind
    item_id: str
    label: str
    fire_at: datetime

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.instance_id, self.item_id, self.label)


def offsets_for(kind: ItemKind) -> tuple[tuple[str, timedelta], ...]:
    return DEADLINE_OFFSETS if kind == "deadline" else COURT_DATE_OFFSETS


def fire_time(kind: ItemKind, target: datetime, label: str) -> datetime:
    if label == OVERDUE:
        return target
    for name, offset in offsets_for(kind):
        if name == label:
            return target - offset
    raise KeyError(label)


def offsets_to_schedule(kind: ItemKind, target: datetime, now: datetime) -> list[str]:
    """Labels whose fire time is still ahead of ``now``."""

    return [name for name, offset in offsets_for(kind) if target - offset > now]


def owes_overdue(item: Deadline | CourtDate) -> bool:
    """A deadline owes an overdue notice only while one of its offsets is unfired.

    Items added too late for any offset still get the overdue notice.
    """

    if OVERDUE in item.reminders_fired:
        return False
    scheduled = [label for label in item.reminders_scheduled if label != OVERDUE]
    return not scheduled or any(label not in item.reminders_fired for label in scheduled)


def item_timers(
    instance_id: str, kind: ItemKind, item: Deadline | CourtDate
) -> list[ReminderTimer]:
    """Timers still owed for ``item``, in chronological order."""

    if item.removed_at is not None:
        return []

    target = item.target_at
    timers = [
        ReminderTimer(
            instance_id=instance_id,
            item_kind=kind,
            item_id=item.item_id,
            label=label,
            fire_at=fire_time(kind, target, label),
        )
        for label in item.reminders_scheduled
        if label not in item.reminders_fired and label != OVERDUE
    ]
    if kind == "deadline" and owes_overdue(item):
        timers.append(
            ReminderTimer(
                instance_id=instance_id,
                item_kind=kind,
                item_id=item.item_id,
                label=OVERDUE,
                fire_at=target,
            )
        )
    return sorted(timers, key=lambda t: t.fire_at)


def pending_timers(instance: WorkflowInstance) -> list[ReminderTimer]:
    """Every timer owed by a live instance. Terminal instances owe nothing."""

    if instance.is_terminal:
        return []
    timers: list[ReminderTimer] = []
    for deadline in instance.deadlines:
        timers.extend(item_timers(instance.instance_id, "deadline", deadline))
    for court_date in instance.court_dates:
        timers.extend(item_timers(instance.instance_id, "court_date", court_date))
    return sorted(timers, key=lambda t: t.fire_at)


def resolve_firing(
    kind: ItemKind, item: Deadline | CourtDate, label: str, now: datetime
) -> str | None:
    """Decide what a timer firing for ``label`` at ``now`` actually records.

    Returns the label to record in ``reminders_fired`` or None when the firing must
    be ignored. Once a deadline is past due, any outstanding offset collapses into
    a single overdue event. Past court dates fire nothing further.
    """

    if item.removed_at is not None or label in item.reminders_fired:
        return None

    target = item.target_at
    if now >= target:
        if kind == "deadline" and owes_overdue(item):
            return OVERDUE
        return None

    if label == OVERDUE or label not in item.reminders_scheduled:
        return None
    if now < fire_time(kind, target, label):
        return None
    return label
