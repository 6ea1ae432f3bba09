"""Test configuration and fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from stage_workflow_orchestrator.orchestrator.notifications import NotificationResult
from stage_workflow_orchestrator.orchestrator.presets import PRESET_TEMPLATES
from stage_workflow_orchestrator.orchestrator.runtime.service import WorkflowService
from stage_workflow_orchestrator.orchestrator.runtime.store import FileInstanceStore
from stage_workflow_orchestrator.orchestrator.templates import (
    InMemoryTemplateStore,
    RequirementDefinition,
    StageDefinition,
    WorkflowTemplate,
)
from stage_workflow_orchestrator.orchestrator.workflow.policy import RetryPolicy

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

LITIGATION = WorkflowTemplate(
    template_id="litigation",
    name="Litigation",
    stages=(
        StageDefinition(
            stage_id="intake",
            name="Intake",
            requirements=(
                RequirementDefinition(requirement_id="upload-retainer", name="UploadRetainer"),
                RequirementDefinition(
                    requirement_id="client-photo", name="Client photo", is_required=False
                ),
            ),
        ),
        StageDefinition(stage_id="discovery", name="Discovery"),
        StageDefinition(stage_id="trial", name="Trial"),
        StageDefinition(
            stage_id="closed",
            name="Closed",
            requirements=(
                RequirementDefinition(requirement_id="final-invoice", name="Final invoice"),
            ),
        ),
    ),
)


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.keys: list[str | None] = []
        self._lock = threading.Lock()

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        idempotency_key: str | None = None,
    ) -> NotificationResult:
        with self._lock:
            self.sent.append((recipient, subject, body))
            self.keys.append(idempotency_key)
        return NotificationResult(recipient=recipient, delivered=True)

    def subjects(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [s for _, s, _ in self.sent if s.startswith(prefix)]


class RecordingSubjects:
    def __init__(self) -> None:
        self.stages: list[tuple[str, str, datetime]] = []
        self.notes: list[tuple[str, str]] = []

    def update_stage(self, subject_id: str, stage_name: str, entered_at: datetime) -> None:
        self.stages.append((subject_id, stage_name, entered_at))

    def append_note(self, subject_id: str, text: str) -> None:
        self.notes.append((subject_id, text))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def subjects() -> RecordingSubjects:
    return RecordingSubjects()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3, initial_interval=1.0, backoff_coefficient=2.0, maximum_interval=60.0
    )


@pytest.fixture
def template_store() -> InMemoryTemplateStore:
    return InMemoryTemplateStore([*PRESET_TEMPLATES, LITIGATION])


@pytest.fixture
def instances_dir(tmp_path: Path) -> Path:
    return tmp_path / "instances"


@pytest.fixture
def instance_store(instances_dir: Path) -> FileInstanceStore:
    return FileInstanceStore(instances_dir)


def build_service(
    *,
    store: FileInstanceStore,
    templates: InMemoryTemplateStore,
    subjects: RecordingSubjects,
    notifier: object,
    clock: FakeClock,
    sleeps: list[float],
    retry_policy: RetryPolicy,
) -> WorkflowService:
    return WorkflowService(
        store=store,
        templates=templates,
        subjects=subjects,
        notifier=notifier,  # type: ignore[arg-type]
        retry_policy=retry_policy,
        signal_workers=2,
        activity_workers=0,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def service(
    instance_store: FileInstanceStore,
    template_store: InMemoryTemplateStore,
    subjects: RecordingSubjects,
    notifier: RecordingNotifier,
    clock: FakeClock,
    sleeps: list[float],
    fast_retry: RetryPolicy,
) -> Iterator[WorkflowService]:
    svc = build_service(
        store=instance_store,
        templates=template_store,
        subjects=subjects,
        notifier=notifier,
        clock=clock,
        sleeps=sleeps,
        retry_policy=fast_retry,
    )
    yield svc
    svc.close()
