"""Signal and query gateway.

Each instance has a FIFO mailbox. At most one worker drains a given mailbox at a
time, so events for one instance are applied strictly in arrival order while
different instances proceed in parallel on the shared pool. Queries never touch
the mailbox: they read the last committed snapshot.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import JsonValue

from stage_workflow_orchestrator.orchestrator.errors import (
    FatalEngineError,
    StateConflictError,
    TransientInfraError,
    WorkflowError,
)
from stage_workflow_orchestrator.orchestrator.runtime.executor import (
    ActivityExecutor,
    ActivityResult,
)
from stage_workflow_orchestrator.orchestrator.runtime.scheduler import ReminderScheduler
from stage_workflow_orchestrator.orchestrator.runtime.store import FileInstanceStore
from stage_workflow_orchestrator.orchestrator.templates import TemplateStore, WorkflowTemplate
from stage_workflow_orchestrator.orchestrator.workflow import queries
from stage_workflow_orchestrator.orchestrator.workflow.audit import AuditEntry
from stage_workflow_orchestrator.orchestrator.workflow.engine import (
    START_EVENT,
    Decision,
    Outcome,
    apply_event,
    fail_instance,
    start_instance,
)
from stage_workflow_orchestrator.orchestrator.workflow.events import (
    Signal,
    TimerFired,
    parse_signal,
)
from stage_workflow_orchestrator.orchestrator.workflow.reminders import ReminderTimer
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import (
    RunState,
    WorkflowInstance,
    as_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SignalResult:
    instance_id: str
    event_type: str
    outcome: Outcome
    sequence: int
    run_state: RunState
    current_stage_id: str
    result: dict[str, JsonValue] = field(default_factory=dict)
    detail: str = ""
    activities: tuple[ActivityResult, ...] = ()

    @property
    def status(self) -> str:
        return self.outcome.value


@dataclass
class _Mailbox:
    queue: deque[tuple[Callable[[], SignalResult], Future[SignalResult]]] = field(
        default_factory=deque
    )
    running: bool = False


class SignalGateway:
    def __init__(
        self,
        *,
        store: FileInstanceStore,
        templates: TemplateStore,
        executor: ActivityExecutor,
        scheduler: ReminderScheduler,
        clock: Callable[[], datetime] = utc_now,
        max_workers: int = 4,
    ) -> None:
        self._store = store
        self._templates = templates
        self._executor = executor
        self._scheduler = scheduler
        self._clock = clock
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="mailbox"
        )
        self._mailboxes: dict[str, _Mailbox] = {}
        self._snapshots: dict[str, WorkflowInstance] = {}
        self._unrecovered: set[str] = set()
        self._lock = threading.Lock()

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    def _enqueue(self, instance_id: str, work: Callable[[], SignalResult]) -> Future[SignalResult]:
        future: Future[SignalResult] = Future()
        with self._lock:
            box = self._mailboxes.setdefault(instance_id, _Mailbox())
            box.queue.append((work, future))
            if box.running:
                return future
            box.running = True
        self._pool.submit(self._drain, instance_id)
        return future

    def _drain(self, instance_id: str) -> None:
        while True:
            with self._lock:
                box = self._mailboxes[instance_id]
                if not box.queue:
                    del self._mailboxes[instance_id]
                    return
                work, future = box.queue.popleft()

            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = work()
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)

    def start(
        self,
        *,
        template_id: str,
        subject_id: str,
        instance_id: str | None = None,
        recipients: Iterable[str] = (),
        started_by: str = "system",
    ) -> Future[SignalResult]:
        template = self._templates.load_template(template_id)
        instance_id = instance_id or uuid.uuid4().hex
        recipient_list = list(recipients)
        return self._enqueue(
            instance_id,
            lambda: self._start(instance_id, template, subject_id, recipient_list, started_by),
        )

    def submit(
        self, instance_id: str, event: Signal | TimerFired, *, now: datetime | None = None
    ) -> Future[SignalResult]:
        return self._enqueue(instance_id, lambda: self._apply(instance_id, event, now))

    def signal(
        self,
        instance_id: str,
        signal_type: str,
        payload: Mapping[str, object] | None = None,
        *,
        timeout: float | None = None,
    ) -> SignalResult:
        """Validate, enqueue and wait for one signal.

        Raises:
            ValidationError: before anything is enqueued if the payload is malformed.
            WorkflowError: whatever the engine or the state commit raised.
        """

        event = parse_signal(signal_type, payload)
        return self.submit(instance_id, event).result(timeout=timeout)

    def fire_timer(
        self, timer: ReminderTimer, *, now: datetime | None = None
    ) -> Future[SignalResult]:
        event = TimerFired(item_kind=timer.item_kind, item_id=timer.item_id, label=timer.label)
        return self.submit(timer.instance_id, event, now=now)

    def tick(self, now: datetime | None = None) -> list[SignalResult]:
        """Fire every timer that is due and wait for the firings to be applied."""

        now = as_utc(now) if now is not None else self._clock()
        self._retry_recovery()
        fired = [(t, self.fire_timer(t, now=now)) for t in self._scheduler.due(now)]
        results: list[SignalResult] = []
        for timer, future in fired:
            try:
                results.append(future.result())
            except TransientInfraError as e:
                logger.warning(
                    "Timer firing failed; will retry on next tick",
                    extra={"instance_id": timer.instance_id, "timer": timer.label, "error": str(e)},
                )
                self._scheduler.schedule([timer])
            except WorkflowError as e:
                logger.error(
                    "Timer firing rejected",
                    extra={
                        "instance_id": timer.instance_id,
                        "item_id": timer.item_id,
                        "timer": timer.label,
                        "code": e.code,
                        "error": str(e),
                    },
                )
            except Exception:
                logger.exception(
                    "Timer firing crashed; will retry on next tick",
                    extra={"instance_id": timer.instance_id, "timer": timer.label},
                )
                self._scheduler.schedule([timer])
        return results

    def recover(self) -> list[str]:
        """Rebuild snapshots and the timer index from the store after a restart."""

        recovered: list[str] = []
        for instance_id in self._store.list_instance_ids():
            if self._recover_one(instance_id):
                recovered.append(instance_id)
        logger.info(
            "Recovered instances",
            extra={"count": len(recovered), "timers": len(self._scheduler)},
        )
        return recovered

    def _recover_one(self, instance_id: str) -> bool:
        try:
            instance = self._load(instance_id)
        except FatalEngineError:
            return False
        except TransientInfraError as e:
            logger.warning(
                "Instance could not be read; recovery will be retried",
                extra={"instance_id": instance_id, "error": str(e)},
            )
            with self._lock:
                self._unrecovered.add(instance_id)
            return False
        with self._lock:
            self._unrecovered.discard(instance_id)
        self._scheduler.rebuild(instance)
        self._publish(instance)
        return True

    def _retry_recovery(self) -> None:
        with self._lock:
            pending = sorted(self._unrecovered)
        for instance_id in pending:
            self._recover_one(instance_id)

    def get_state(self, instance_id: str) -> WorkflowInstance:
        return self._snapshot(instance_id).model_copy(deep=True)

    def get_current_phase(self, instance_id: str) -> queries.CurrentPhase:
        instance = self._snapshot(instance_id)
        return queries.current_phase(instance, self._templates.load_template(instance.template_id))

    def get_pending_requirements(self, instance_id: str) -> list[queries.PendingRequirement]:
        instance = self._snapshot(instance_id)
        template = self._templates.load_template(instance.template_id)
        return queries.pending_requirements(instance, template)

    def get_progress(self, instance_id: str) -> queries.Progress:
        instance = self._snapshot(instance_id)
        return queries.progress(instance, self._templates.load_template(instance.template_id))

    def get_history(self, instance_id: str) -> list[AuditEntry]:
        return self._store.history(instance_id)

    def _snapshot(self, instance_id: str) -> WorkflowInstance:
        with self._lock:
            instance = self._snapshots.get(instance_id)
        if instance is None:
            instance = self._store.load(instance_id)
            self._publish(instance)
        return instance

    def _publish(self, instance: WorkflowInstance) -> None:
        with self._lock:
            current = self._snapshots.get(instance.instance_id)
            if current is None or current.sequence <= instance.sequence:
                self._snapshots[instance.instance_id] = instance

    def _load(self, instance_id: str) -> WorkflowInstance:
        try:
            return self._store.load(instance_id)
        except FatalEngineError as e:
            with self._lock:
                self._snapshots.pop(instance_id, None)
            if not self._store.is_marked_failed(instance_id):
                self._store.mark_failed(instance_id, str(e))
            raise

    def _result(self, decision: Decision, activities: Iterable[ActivityResult]) -> SignalResult:
        instance = decision.instance
        return SignalResult(
            instance_id=instance.instance_id,
            event_type=decision.event_type,
            outcome=decision.outcome,
            sequence=instance.sequence,
            run_state=instance.run_state,
            current_stage_id=instance.current_stage_id,
            result=dict(decision.result),
            detail=decision.detail,
            activities=tuple(activities),
        )

    def _start(
        self,
        instance_id: str,
        template: WorkflowTemplate,
        subject_id: str,
        recipients: list[str],
        started_by: str,
    ) -> SignalResult:
        if self._store.exists(instance_id):
            existing = self._load(instance_id)
            if existing.template_id != template.template_id or existing.subject_id != subject_id:
                raise StateConflictError(
                    f"Instance {instance_id} already exists for another subject or template"
                )
            self._publish(existing)
            return SignalResult(
                instance_id=instance_id,
                event_type=START_EVENT,
                outcome=Outcome.DUPLICATE,
                sequence=existing.sequence,
                run_state=existing.run_state,
                current_stage_id=existing.current_stage_id,
                detail="instance already started",
            )

        decision = start_instance(
            instance_id=instance_id,
            template=template,
            subject_id=subject_id,
            recipients=recipients,
            started_by=started_by,
            now=self._clock(),
        )
        activities = self._executor.execute(decision)
        self._publish(decision.instance)
        logger.info(
            "Workflow started",
            extra={
                "instance_id": instance_id,
                "template_id": template.template_id,
                "subject_id": subject_id,
            },
        )
        return self._result(decision, activities)

    def _apply(
        self, instance_id: str, event: Signal | TimerFired, now: datetime | None
    ) -> SignalResult:
        at = as_utc(now) if now is not None else self._clock()
        instance = self._load(instance_id)
        template = self._templates.load_template(instance.template_id)
        try:
            decision = apply_event(instance=instance, template=template, event=event, now=at)
        except FatalEngineError as e:
            self._fail(instance, template, str(e), at)
            raise

        activities = self._executor.execute(decision)
        if decision.applied:
            self._publish(decision.instance)
        logger.info(
            "Event processed",
            extra={
                "instance_id": instance_id,
                "event_type": event.type,
                "outcome": decision.outcome.value,
                "sequence": decision.instance.sequence,
            },
        )
        return self._result(decision, activities)

    def _fail(
        self, instance: WorkflowInstance, template: WorkflowTemplate, reason: str, now: datetime
    ) -> None:
        logger.error(
            "Instance breaks an engine invariant; failing it",
            extra={"instance_id": instance.instance_id, "reason": reason},
        )
        decision = fail_instance(instance=instance, template=template, reason=reason, now=now)
        self._executor.execute(decision)
        self._publish(decision.instance)
