"""Durable per-instance state: the committed snapshot plus its audit ledger.

One JSON document per instance under ``root``::

    {"state": {...}, "audit": [...], "activities": [...]}

Writes go to a temporary file first and are moved into place with ``os.replace``
so a crash never leaves a half-written document behind.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from stage_workflow_orchestrator.orchestrator.errors import (
    FatalEngineError,
    InstanceNotFoundError,
    StateConflictError,
    TransientInfraError,
    ValidationError,
)
from stage_workflow_orchestrator.orchestrator.workflow.audit import AuditEntry
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import (
    WorkflowInstance,
    utc_now,
)

logger = logging.getLogger(__name__)


def _empty_document() -> dict[str, Any]:
    return {"state": None, "audit": [], "activities": []}


@dataclass
class FileInstanceStore:
    root: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _path_for(self, instance_id: str) -> Path:
        if (
            not instance_id
            or "/" in instance_id
            or "\\" in instance_id
            or instance_id.startswith(".")
        ):
            raise ValidationError(f"Invalid instance id: {instance_id!r}")
        return self.root / f"{instance_id}.json"

    def _marker_for(self, instance_id: str) -> Path:
        return self.root / f"{instance_id}.failed.json"

    def _read_unlocked(self, instance_id: str) -> dict[str, Any] | None:
        marker = self._marker_for(instance_id)
        if marker.exists():
            reason = "unknown"
            try:
                reason = str(json.loads(marker.read_text(encoding="utf-8")).get("reason", reason))
            except json.JSONDecodeError:
                pass
            raise FatalEngineError(f"Instance {instance_id} is marked failed: {reason}")

        path = self._path_for(instance_id)
        if not path.exists():
            return None
        try:
            data = path.read_bytes()
        except OSError as e:
            raise TransientInfraError(f"Instance {instance_id} state could not be read: {e}") from e
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FatalEngineError(f"Instance {instance_id} state is unreadable: {e}") from e
        if not isinstance(raw, dict):
            raise FatalEngineError(f"Instance {instance_id} state is not a JSON object")

        doc = _empty_document()
        doc.update(raw)
        return doc

    def _write_unlocked(self, instance_id: str, doc: dict[str, Any]) -> None:
        path = self._path_for(instance_id)
        tmp = path.with_name(path.name + ".tmp")
        text = json.dumps(doc, indent=2, ensure_ascii=False) + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise TransientInfraError(
                f"Instance {instance_id} state could not be written: {e}"
            ) from e

    @staticmethod
    def _state_from(instance_id: str, doc: dict[str, Any]) -> WorkflowInstance | None:
        if doc.get("state") is None:
            return None
        try:
            return WorkflowInstance.model_validate(doc["state"])
        except PydanticValidationError as e:
            raise FatalEngineError(f"Instance {instance_id} state is invalid: {e}") from e

    def exists(self, instance_id: str) -> bool:
        with self._lock:
            return self._path_for(instance_id).exists()

    def load(self, instance_id: str) -> WorkflowInstance:
        """Return the last committed state.

        Raises:
            InstanceNotFoundError: nothing was ever committed for this id.
            FatalEngineError: the stored document is unreadable or marked failed.
        """

        with self._lock:
            doc = self._read_unlocked(instance_id)
        if doc is None:
            raise InstanceNotFoundError(instance_id)
        instance = self._state_from(instance_id, doc)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def commit(
        self, *, instance: WorkflowInstance, audit: AuditEntry, expected_sequence: int
    ) -> bool:
        """Write ``instance`` and its audit entry as one document update.

        Returns False when exactly this commit is already stored, which makes a
        retried commit safe.

        Raises:
            StateConflictError: the stored sequence is not ``expected_sequence``.
        """

        instance_id = instance.instance_id
        with self._lock:
            doc = self._read_unlocked(instance_id) or _empty_document()
            current = self._state_from(instance_id, doc)
            current_sequence = current.sequence if current is not None else 0

            if current_sequence == instance.sequence and any(
                e.get("entry_id") == audit.entry_id for e in doc["audit"]
            ):
                return False
            if current_sequence != expected_sequence:
                raise StateConflictError(
                    f"Instance {instance_id} is at sequence {current_sequence}, "
                    f"expected {expected_sequence}"
                )

            doc["state"] = instance.model_dump(mode="json")
            doc["audit"].append(audit.model_dump(mode="json"))
            self._write_unlocked(instance_id, doc)
        logger.debug(
            "Committed instance state",
            extra={"instance_id": instance_id, "sequence": instance.sequence},
        )
        return True

    def append_audit(self, entry: AuditEntry) -> None:
        """Add an activity outcome to the ledger, replacing an entry with the same id."""

        with self._lock:
            doc = self._read_unlocked(entry.instance_id)
            if doc is None:
                raise InstanceNotFoundError(entry.instance_id)
            payload = entry.model_dump(mode="json")
            for idx, existing in enumerate(doc["audit"]):
                if existing.get("entry_id") == entry.entry_id:
                    doc["audit"][idx] = payload
                    break
            else:
                doc["audit"].append(payload)
            self._write_unlocked(entry.instance_id, doc)

    def history(self, instance_id: str) -> list[AuditEntry]:
        with self._lock:
            doc = self._read_unlocked(instance_id)
        if doc is None:
            raise InstanceNotFoundError(instance_id)
        try:
            entries = [AuditEntry.model_validate(item) for item in doc["audit"]]
        except PydanticValidationError as e:
            raise FatalEngineError(f"Audit ledger of {instance_id} is invalid: {e}") from e
        return sorted(entries, key=lambda e: (e.sequence, e.timestamp))

    def list_instance_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(
            p.name[: -len(".json")]
            for p in self.root.glob("*.json")
            if not p.name.endswith(".failed.json")
        )

    def has_activity(self, instance_id: str, key: str) -> bool:
        with self._lock:
            doc = self._read_unlocked(instance_id)
        return doc is not None and key in doc["activities"]

    def mark_activity(self, instance_id: str, key: str) -> None:
        with self._lock:
            doc = self._read_unlocked(instance_id)
            if doc is None:
                raise InstanceNotFoundError(instance_id)
            if key in doc["activities"]:
                return
            doc["activities"].append(key)
            self._write_unlocked(instance_id, doc)

    def mark_failed(self, instance_id: str, reason: str) -> None:
        """Flag an instance whose document cannot be read.

        The document itself is left untouched for the operator to inspect.
        """

        marker = self._marker_for(instance_id)
        with self._lock:
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.write_text(
                json.dumps({"reason": reason, "at": utc_now().isoformat()}, indent=2) + "\n",
                encoding="utf-8",
            )
        logger.error(
            "Instance marked failed", extra={"instance_id": instance_id, "reason": reason}
        )

    def is_marked_failed(self, instance_id: str) -> bool:
        return self._marker_for(instance_id).exists()
