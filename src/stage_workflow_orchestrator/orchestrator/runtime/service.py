"""Composition root: wires stores, executor, scheduler and gateway together.

``WorkflowService`` is what the CLI, the monitoring app and embedding code talk
to. It owns the thread pools, so close it (or use it as a context manager).
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from types import TracebackType

from pydantic import BaseModel, Field

from stage_workflow_orchestrator.orchestrator.config import OrchestratorSettings
from stage_workflow_orchestrator.orchestrator.errors import FatalEngineError
from stage_workflow_orchestrator.orchestrator.notifications import (
    LoggingNotificationSender,
    NotificationSender,
    WebhookNotificationSender,
)
from stage_workflow_orchestrator.orchestrator.presets import preset_store
from stage_workflow_orchestrator.orchestrator.runtime.executor import ActivityExecutor
from stage_workflow_orchestrator.orchestrator.runtime.gateway import SignalGateway, SignalResult
from stage_workflow_orchestrator.orchestrator.runtime.scheduler import ReminderScheduler
from stage_workflow_orchestrator.orchestrator.runtime.store import FileInstanceStore
from stage_workflow_orchestrator.orchestrator.subjects import JsonSubjectStore, SubjectRecordStore
from stage_workflow_orchestrator.orchestrator.templates import (
    FileTemplateStore,
    TemplateStore,
    WorkflowTemplate,
)
from stage_workflow_orchestrator.orchestrator.workflow import queries
from stage_workflow_orchestrator.orchestrator.workflow.audit import (
    REMEDIATION_STATUSES,
    AuditEntry,
    compliance_summary,
)
from stage_workflow_orchestrator.orchestrator.workflow.engine import replay
from stage_workflow_orchestrator.orchestrator.workflow.policy import RetryPolicy
from stage_workflow_orchestrator.orchestrator.workflow.reminders import pending_timers
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import (
    RunState,
    WorkflowInstance,
    utc_now,
)

logger = logging.getLogger(__name__)


class InstanceHandle(BaseModel):
    instance_id: str
    template_id: str
    subject_id: str
    current_stage_id: str
    run_state: RunState
    created: bool = True


class PendingTimer(BaseModel):
    item_kind: str
    item_id: str
    label: str
    fire_at: datetime


class DegradedActivity(BaseModel):
    entry_id: str
    event_type: str
    status: str
    timestamp: datetime
    error: str | None = None


class InstanceDescription(BaseModel):
    instance_id: str
    run_state: RunState
    template_id: str = ""
    subject_id: str = ""
    current_stage_id: str = ""
    current_stage_name: str = ""
    sequence: int = 0
    progress_percent: int = 0
    pending_requirements: list[str] = Field(default_factory=list)
    pending_timers: list[PendingTimer] = Field(default_factory=list)
    degraded_activities: list[DegradedActivity] = Field(default_factory=list)
    failure_reason: str | None = None
    cancel_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class WorkflowService:
    def __init__(
        self,
        *,
        store: FileInstanceStore,
        templates: TemplateStore,
        subjects: SubjectRecordStore,
        notifier: NotificationSender,
        retry_policy: RetryPolicy | None = None,
        signal_workers: int = 4,
        activity_workers: int = 4,
        default_recipients: Iterable[str] = (),
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.templates = templates
        self.scheduler = ReminderScheduler()
        self.executor = ActivityExecutor(
            store=store,
            subjects=subjects,
            notifier=notifier,
            scheduler=self.scheduler,
            retry_policy=retry_policy,
            max_workers=activity_workers,
            sleep=sleep,
            clock=clock,
        )
        self.gateway = SignalGateway(
            store=store,
            templates=templates,
            executor=self.executor,
            scheduler=self.scheduler,
            clock=clock,
            max_workers=signal_workers,
        )
        self._default_recipients = list(default_recipients)
        self._notifier = notifier

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        *,
        notifier: NotificationSender | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> WorkflowService:
        if notifier is None:
            if settings.notification_webhook_url:
                notifier = WebhookNotificationSender(
                    settings.notification_webhook_url,
                    timeout=settings.notification_timeout_seconds,
                )
            else:
                notifier = LoggingNotificationSender()

        return cls(
            store=FileInstanceStore(settings.instances_dir),
            templates=FileTemplateStore(settings.templates_path, fallback=preset_store()),
            subjects=JsonSubjectStore(settings.subjects_file),
            notifier=notifier,
            retry_policy=settings.retry_policy(),
            signal_workers=settings.signal_workers,
            activity_workers=settings.activity_workers,
            default_recipients=settings.parsed_default_recipients(),
            clock=clock,
        )

    def __enter__(self) -> WorkflowService:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        self.gateway.close()
        self.executor.shutdown()
        close = getattr(self._notifier, "close", None)
        if callable(close):
            close()

    def flush(self) -> None:
        self.executor.flush()

    def list_templates(self) -> list[WorkflowTemplate]:
        lister = getattr(self.templates, "list", None)
        return list(lister()) if callable(lister) else []

    def start(
        self,
        subject_id: str,
        template_id: str,
        *,
        recipients: Iterable[str] | None = None,
        started_by: str = "system",
        instance_id: str | None = None,
    ) -> InstanceHandle:
        """Start a workflow for ``subject_id``.

        Passing ``instance_id`` makes the call idempotent: starting an existing
        instance for the same subject and template returns its handle.
        """

        result = self.gateway.start(
            template_id=template_id,
            subject_id=subject_id,
            instance_id=instance_id,
            recipients=self._default_recipients if recipients is None else recipients,
            started_by=started_by,
        ).result()
        return InstanceHandle(
            instance_id=result.instance_id,
            template_id=template_id,
            subject_id=subject_id,
            current_stage_id=result.current_stage_id,
            run_state=result.run_state,
            created=result.status == "applied",
        )

    def signal(
        self, instance_id: str, signal_type: str, payload: Mapping[str, object] | None = None
    ) -> SignalResult:
        return self.gateway.signal(instance_id, signal_type, payload)

    def get_state(self, instance_id: str) -> WorkflowInstance:
        return self.gateway.get_state(instance_id)

    def get_current_phase(self, instance_id: str) -> queries.CurrentPhase:
        return self.gateway.get_current_phase(instance_id)

    def get_pending_requirements(self, instance_id: str) -> list[queries.PendingRequirement]:
        return self.gateway.get_pending_requirements(instance_id)

    def get_progress(self, instance_id: str) -> queries.Progress:
        return self.gateway.get_progress(instance_id)

    def get_history(self, instance_id: str) -> list[AuditEntry]:
        return self.gateway.get_history(instance_id)

    def compliance_report(self, instance_id: str) -> dict[str, object]:
        return compliance_summary(self.get_history(instance_id))

    def replay(self, instance_id: str) -> WorkflowInstance:
        """Rebuild the instance from its audit ledger (used to verify stored state)."""

        instance = self.gateway.get_state(instance_id)
        template = self.templates.load_template(instance.template_id)
        return replay(template=template, entries=self.get_history(instance_id))

    def describe(self, instance_id: str) -> InstanceDescription:
        try:
            instance = self.gateway.get_state(instance_id)
        except FatalEngineError as e:
            return InstanceDescription(
                instance_id=instance_id, run_state=RunState.FAILED, failure_reason=str(e)
            )

        description = InstanceDescription(
            instance_id=instance.instance_id,
            run_state=instance.run_state,
            template_id=instance.template_id,
            subject_id=instance.subject_id,
            current_stage_id=instance.current_stage_id,
            sequence=instance.sequence,
            pending_timers=[
                PendingTimer(
                    item_kind=t.item_kind, item_id=t.item_id, label=t.label, fire_at=t.fire_at
                )
                for t in pending_timers(instance)
            ],
            degraded_activities=[
                DegradedActivity(
                    entry_id=e.entry_id,
                    event_type=e.event_type,
                    status=e.result_status.value,
                    timestamp=e.timestamp,
                    error=str(e.payload["error"]) if e.payload.get("error") is not None else None,
                )
                for e in self.get_history(instance_id)
                if e.result_status in REMEDIATION_STATUSES
            ],
            failure_reason=instance.failure_reason,
            cancel_reason=instance.cancel_reason,
            created_at=instance.created_at,
            updated_at=instance.updated_at,
            completed_at=instance.completed_at,
        )

        # A failed instance may point at a stage its template no longer has.
        template = self.templates.load_template(instance.template_id)
        if template.has_stage(instance.current_stage_id):
            description.current_stage_name = template.stage(instance.current_stage_id).name
            description.progress_percent = queries.progress(instance, template).percent
            description.pending_requirements = [
                r.requirement_id
                for r in queries.pending_requirements(instance, template)
                if r.is_required
            ]
        return description

    def tick(self, now: datetime | None = None) -> list[SignalResult]:
        return self.gateway.tick(now)

    def recover(self) -> list[str]:
        return self.gateway.recover()

    def run_timers(self, *, poll_seconds: float, stop: threading.Event) -> None:
        """Tick until ``stop`` is set. Recovers the timer index first."""

        self.recover()
        while not stop.is_set():
            try:
                fired = self.tick()
            except Exception:
                logger.exception("Timer tick failed")
            else:
                if fired:
                    logger.info("Timers fired", extra={"count": len(fired)})
            stop.wait(poll_seconds)
