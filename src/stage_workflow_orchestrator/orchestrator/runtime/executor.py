"""Activity executor: carries out the effects of an applied decision.

The state commit is critical and runs synchronously; if it cannot be made the
error propagates and the previous state stays committed. Everything else is
best-effort with bounded retries. Its outcome is written to the audit ledger,
and a failure never rolls the transition back.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from stage_workflow_orchestrator.orchestrator.errors import ActivityError
from stage_workflow_orchestrator.orchestrator.notifications import NotificationSender
from stage_workflow_orchestrator.orchestrator.runtime.scheduler import ReminderScheduler
from stage_workflow_orchestrator.orchestrator.runtime.store import FileInstanceStore
from stage_workflow_orchestrator.orchestrator.subjects import SubjectRecordStore
from stage_workflow_orchestrator.orchestrator.workflow.actions import (
    AppendSubjectNote,
    CancelReminders,
    Effect,
    PersistInstance,
    ScheduleReminders,
    SendNotification,
    UpdateSubjectStage,
    activity_key,
)
from stage_workflow_orchestrator.orchestrator.workflow.audit import AuditEntry, ResultStatus
from stage_workflow_orchestrator.orchestrator.workflow.engine import Decision
from stage_workflow_orchestrator.orchestrator.workflow.policy import RetryPolicy
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ActivityResult:
    key: str
    kind: str
    status: ResultStatus
    attempts: int = 0
    error: str | None = None


@dataclass(frozen=True, slots=True)
class _Activity:
    effect: Effect
    key: str
    instance_id: str
    event_type: str
    sequence: int


class ActivityExecutor:
    def __init__(
        self,
        *,
        store: FileInstanceStore,
        subjects: SubjectRecordStore,
        notifier: NotificationSender,
        scheduler: ReminderScheduler,
        retry_policy: RetryPolicy | None = None,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._subjects = subjects
        self._notifier = notifier
        self._scheduler = scheduler
        self._policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

        self._pool = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="activity")
            if max_workers > 0
            else None
        )
        self._pending: list[Future[ActivityResult | None]] = []
        self._pending_lock = threading.Lock()

        self._handlers: dict[type, Callable[[Any, _Activity], None]] = {
            ScheduleReminders: self._schedule_reminders,
            CancelReminders: self._cancel_reminders,
            SendNotification: self._send_notification,
            UpdateSubjectStage: self._update_subject_stage,
            AppendSubjectNote: self._append_subject_note,
        }

    def execute(self, decision: Decision) -> list[ActivityResult]:
        """Run the effects of ``decision`` in order.

        Returns the results of the activities that ran inline. Background
        activities report through the audit ledger; call ``flush`` to wait for them.

        Raises:
            Whatever the state commit raised once retries are exhausted.
        """

        if not decision.applied:
            return []

        instance = decision.instance
        results: list[ActivityResult] = []
        for index, effect in enumerate(decision.effects):
            key = activity_key(instance.instance_id, decision.event_type, instance.sequence, index)
            if isinstance(effect, PersistInstance):
                self._commit(effect)
                continue

            activity = _Activity(
                effect=effect,
                key=key,
                instance_id=instance.instance_id,
                event_type=decision.event_type,
                sequence=instance.sequence,
            )
            if effect.background and self._pool is not None:
                future = self._pool.submit(self._run_logged, activity)
                with self._pending_lock:
                    self._pending.append(future)
            else:
                results.append(self._run(activity))
        return results

    def flush(self, timeout: float | None = None) -> None:
        """Wait for background activities submitted so far."""

        with self._pending_lock:
            pending, self._pending = self._pending, []
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self.flush()
        if self._pool is not None:
            self._pool.shutdown(wait=True)

    def _commit(self, effect: PersistInstance) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                self._store.commit(
                    instance=effect.instance,
                    audit=effect.audit,
                    expected_sequence=effect.expected_sequence,
                )
                return
            except Exception as e:
                if not self._policy.should_retry(e, attempt):
                    logger.error(
                        "State commit failed",
                        extra={
                            "instance_id": effect.instance.instance_id,
                            "sequence": effect.instance.sequence,
                            "attempt": attempt,
                            "error": str(e),
                        },
                    )
                    raise
                delay = self._policy.backoff(attempt)
                logger.warning(
                    "State commit failed; retrying",
                    extra={
                        "instance_id": effect.instance.instance_id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    },
                )
                self._sleep(delay)

    def _run_logged(self, activity: _Activity) -> ActivityResult | None:
        try:
            return self._run(activity)
        except Exception:
            logger.exception(
                "Background activity crashed",
                extra={"activity_key": activity.key, "kind": activity.effect.kind},
            )
            return None

    def _run(self, activity: _Activity) -> ActivityResult:
        effect = activity.effect
        if self._store.has_activity(activity.instance_id, activity.key):
            logger.debug("Activity already applied", extra={"activity_key": activity.key})
            return ActivityResult(key=activity.key, kind=effect.kind, status=ResultStatus.SKIPPED)

        handler = self._handlers[type(effect)]
        attempt = 0
        error: str | None = None
        while True:
            attempt += 1
            try:
                handler(effect, activity)
            except Exception as e:
                if self._policy.should_retry(e, attempt):
                    delay = self._policy.backoff(attempt)
                    logger.warning(
                        "Activity failed; retrying",
                        extra={
                            "activity_key": activity.key,
                            "kind": effect.kind,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "error": str(e),
                        },
                    )
                    self._sleep(delay)
                    continue
                status = (
                    ResultStatus.DEGRADED if self._policy.is_retryable(e) else ResultStatus.FAILED
                )
                error = str(e)
                logger.error(
                    "Activity did not complete",
                    extra={
                        "activity_key": activity.key,
                        "kind": effect.kind,
                        "attempt": attempt,
                        "status": status.value,
                        "error": error,
                    },
                )
            else:
                status = ResultStatus.SUCCEEDED
                self._store.mark_activity(activity.instance_id, activity.key)
            break

        result = ActivityResult(
            key=activity.key, kind=effect.kind, status=status, attempts=attempt, error=error
        )
        self._audit(activity, result)
        return result

    def _audit(self, activity: _Activity, result: ActivityResult) -> None:
        self._store.append_audit(
            AuditEntry(
                entry_id=f"{activity.key}:activity",
                instance_id=activity.instance_id,
                sequence=activity.sequence,
                timestamp=self._clock(),
                actor_id="executor",
                event_type=f"activity.{result.kind}",
                payload={
                    "activity_key": activity.key,
                    "source_event": activity.event_type,
                    "attempts": result.attempts,
                    "error": result.error,
                },
                result_status=result.status,
            )
        )

    def _schedule_reminders(self, effect: ScheduleReminders, activity: _Activity) -> None:
        self._scheduler.schedule(effect.timers)

    def _cancel_reminders(self, effect: CancelReminders, activity: _Activity) -> None:
        self._scheduler.cancel(effect.instance_id, effect.item_id)

    def _send_notification(self, effect: SendNotification, activity: _Activity) -> None:
        # Recipients are tracked one by one so a retry only resends what is missing.
        undelivered: list[str] = []
        for recipient in effect.recipients:
            recipient_key = f"{activity.key}:{recipient}"
            if self._store.has_activity(activity.instance_id, recipient_key):
                continue
            result = self._notifier.send(
                recipient, effect.subject, effect.body, idempotency_key=recipient_key
            )
            if result.delivered:
                self._store.mark_activity(activity.instance_id, recipient_key)
            else:
                undelivered.append(f"{recipient} ({result.detail})")
        if undelivered:
            raise ActivityError(f"Notification not delivered to {', '.join(undelivered)}")

    def _update_subject_stage(self, effect: UpdateSubjectStage, activity: _Activity) -> None:
        self._subjects.update_stage(effect.subject_id, effect.stage_name, effect.entered_at)

    def _append_subject_note(self, effect: AppendSubjectNote, activity: _Activity) -> None:
        self._subjects.append_note(effect.subject_id, effect.text)
