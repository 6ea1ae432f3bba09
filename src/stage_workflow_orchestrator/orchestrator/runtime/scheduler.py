"""In-memory timer index.

The index is a cache over persisted item state: ``rebuild`` recomputes an
instance's timers from its ``reminders_scheduled``/``reminders_fired`` lists, so
losing the process loses nothing.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import datetime

from stage_workflow_orchestrator.orchestrator.workflow.reminders import (
    ReminderTimer,
    pending_timers,
)
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import (
    WorkflowInstance,
    as_utc,
)


class ReminderScheduler:
    def __init__(self) -> None:
        self._timers: dict[tuple[str, str, str], ReminderTimer] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)

    def schedule(self, timers: Iterable[ReminderTimer]) -> int:
        added = 0
        with self._lock:
            for timer in timers:
                if timer.key not in self._timers:
                    added += 1
                self._timers[timer.key] = timer
        return added

    def cancel(self, instance_id: str, item_id: str | None = None) -> int:
        """Drop timers for one item, or for every item of the instance."""

        with self._lock:
            doomed = [
                key
                for key, t in self._timers.items()
                if t.instance_id == instance_id and (item_id is None or t.item_id == item_id)
            ]
            for key in doomed:
                del self._timers[key]
        return len(doomed)

    def due(self, now: datetime) -> list[ReminderTimer]:
        """Remove and return every timer whose fire time is at or before ``now``."""

        now = as_utc(now)
        with self._lock:
            ready = sorted(
                (t for t in self._timers.values() if t.fire_at <= now),
                key=lambda t: (t.fire_at, t.instance_id, t.item_id),
            )
            for timer in ready:
                del self._timers[timer.key]
        return ready

    def pending(self, instance_id: str | None = None) -> list[ReminderTimer]:
        with self._lock:
            timers = [
                t
                for t in self._timers.values()
                if instance_id is None or t.instance_id == instance_id
            ]
        return sorted(timers, key=lambda t: t.fire_at)

    def rebuild(self, instance: WorkflowInstance) -> int:
        """Replace the instance's timers with those its persisted state still owes."""

        self.cancel(instance.instance_id)
        return self.schedule(pending_timers(instance))
