"""Append-only audit ledger entries.

One entry is written for every applied signal, every timer firing and every
activity outcome. The signal entries are enough to rebuild an instance (see
``engine.replay``); the activity entries are what compliance reporting reads.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, JsonValue


class ResultStatus(str, Enum):
    APPLIED = "applied"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    DEGRADED = "degraded"
    FAILED = "failed"


REMEDIATION_STATUSES: frozenset[ResultStatus] = frozenset(
    {ResultStatus.DEGRADED, ResultStatus.FAILED}
)


class AuditEntry(BaseModel):
    entry_id: str
    instance_id: str
    sequence: int
    timestamp: datetime
    actor_id: str
    event_type: str
    payload: dict[str, JsonValue] = Field(default_factory=dict)
    result_status: ResultStatus = ResultStatus.APPLIED

    @property
    def is_activity(self) -> bool:
        return self.event_type.startswith("activity.")


def signal_entry_id(instance_id: str, sequence: int, event_type: str) -> str:
    return f"{instance_id}:{sequence}:{event_type}"


def compliance_summary(entries: Iterable[AuditEntry]) -> dict[str, object]:
    """Summarise a ledger for compliance reporting."""

    by_event: Counter[str] = Counter()
    by_status: Counter[str] = Counter()
    remediation: list[dict[str, object]] = []
    first: datetime | None = None
    last: datetime | None = None

    for entry in entries:
        by_event[entry.event_type] += 1
        by_status[entry.result_status.value] += 1
        if entry.result_status in REMEDIATION_STATUSES:
            remediation.append(
                {
                    "entry_id": entry.entry_id,
                    "event_type": entry.event_type,
                    "status": entry.result_status.value,
                    "timestamp": entry.timestamp.isoformat(),
                    "error": entry.payload.get("error"),
                }
            )
        if first is None or entry.timestamp < first:
            first = entry.timestamp
        if last is None or entry.timestamp > last:
            last = entry.timestamp

    return {
        "total": sum(by_event.values()),
        "by_event_type": dict(by_event),
        "by_status": dict(by_status),
        "needs_remediation": remediation,
        "first_at": first.isoformat() if first else None,
        "last_at": last.isoformat() if last else None,
    }
