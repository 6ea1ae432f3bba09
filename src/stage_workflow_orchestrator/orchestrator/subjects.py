"""Subject records: the case or employee file a workflow instance drives.

The engine only ever asks the record store to note a stage change or append a
note. The JSON implementation keeps one list of records in a single file.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from stage_workflow_orchestrator.orchestrator.errors import ActivityError
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import utc_now

logger = logging.getLogger(__name__)


class SubjectRecordStore(Protocol):
    def update_stage(self, subject_id: str, stage_name: str, entered_at: datetime) -> None: ...

    def append_note(self, subject_id: str, text: str) -> None: ...


class SubjectNote(BaseModel):
    text: str
    at: datetime


class SubjectRecord(BaseModel):
    subject_id: str
    stage_name: str | None = None
    stage_entered_at: datetime | None = None
    notes: list[SubjectNote] = Field(default_factory=list)


@dataclass
class JsonSubjectStore:
    """Subject records persisted to one JSON file.

    Unknown subjects are created on first write.
    """

    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> dict[str, SubjectRecord]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ActivityError(f"Subject store {self.path} is not valid JSON: {e}") from e
        if not isinstance(raw, list):
            raise ActivityError(f"Subject store {self.path} must hold a JSON list")
        records = [SubjectRecord.model_validate(item) for item in raw]
        return {r.subject_id: r for r in records}

    def _save_unlocked(self, records: dict[str, SubjectRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in records.values()]
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def get(self, subject_id: str) -> SubjectRecord | None:
        with self._lock:
            return self._load_unlocked().get(subject_id)

    def update_stage(self, subject_id: str, stage_name: str, entered_at: datetime) -> None:
        with self._lock:
            records = self._load_unlocked()
            record = records.get(subject_id) or SubjectRecord(subject_id=subject_id)
            records[subject_id] = record.model_copy(
                update={"stage_name": stage_name, "stage_entered_at": entered_at}
            )
            self._save_unlocked(records)
        logger.debug(
            "Subject stage updated", extra={"subject_id": subject_id, "stage_name": stage_name}
        )

    def append_note(self, subject_id: str, text: str) -> None:
        with self._lock:
            records = self._load_unlocked()
            record = records.get(subject_id) or SubjectRecord(subject_id=subject_id)
            notes = [*record.notes, SubjectNote(text=text, at=utc_now())]
            records[subject_id] = record.model_copy(update={"notes": notes})
            self._save_unlocked(records)
