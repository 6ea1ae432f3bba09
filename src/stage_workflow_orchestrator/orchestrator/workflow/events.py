"""Signals: the external commands that mutate an instance.

Every signal type is a pydantic model tagged by ``type``. The gateway validates raw
payloads against the tagged union before anything reaches the engine.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    StringConstraints,
    TypeAdapter,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from stage_workflow_orchestrator.orchestrator.errors import ValidationError
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import as_utc

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Text = Annotated[str, StringConstraints(strip_whitespace=True, max_length=4000)]
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class _Signal(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    signal_id: NonEmptyStr | None = Field(
        default=None,
        description="Caller-supplied idempotency key. Replays are answered as duplicates.",
    )

    @property
    def actor_id(self) -> str:
        return "system"


class CompleteRequirement(_Signal):
    type: Literal["completeRequirement"] = "completeRequirement"
    requirement_id: NonEmptyStr
    name: Text = ""
    completed_by: NonEmptyStr
    metadata: dict[str, JsonValue] = Field(default_factory=dict)

    @property
    def actor_id(self) -> str:
        return self.completed_by


class TransitionStage(_Signal):
    type: Literal["transitionStage"] = "transitionStage"
    target_stage_id: NonEmptyStr
    notes: Text = ""
    requested_by: NonEmptyStr
    force: bool = False

    @model_validator(mode="after")
    def _force_needs_justification(self) -> TransitionStage:
        if self.force and not self.notes:
            raise ValueError("a forced transition requires a justification in notes")
        return self

    @property
    def actor_id(self) -> str:
        return self.requested_by


class AddDeadline(_Signal):
    type: Literal["addDeadline"] = "addDeadline"
    deadline_id: NonEmptyStr | None = None
    title: NonEmptyStr
    due_at: UtcDatetime
    description: Text = ""
    added_by: NonEmptyStr

    @property
    def actor_id(self) -> str:
        return self.added_by


class RemoveDeadline(_Signal):
    type: Literal["removeDeadline"] = "removeDeadline"
    deadline_id: NonEmptyStr
    requested_by: NonEmptyStr = "system"

    @property
    def actor_id(self) -> str:
        return self.requested_by


class AddCourtDate(_Signal):
    type: Literal["addCourtDate"] = "addCourtDate"
    event_id: NonEmptyStr | None = None
    title: NonEmptyStr
    at: UtcDatetime
    location: Text = ""
    notes: Text = ""
    added_by: NonEmptyStr

    @property
    def actor_id(self) -> str:
        return self.added_by


class RemoveCourtDate(_Signal):
    type: Literal["removeCourtDate"] = "removeCourtDate"
    event_id: NonEmptyStr
    requested_by: NonEmptyStr = "system"

    @property
    def actor_id(self) -> str:
        return self.requested_by


class Pause(_Signal):
    type: Literal["pause"] = "pause"
    reason: Text = ""
    requested_by: NonEmptyStr = "system"

    @property
    def actor_id(self) -> str:
        return self.requested_by


class Resume(_Signal):
    type: Literal["resume"] = "resume"
    requested_by: NonEmptyStr = "system"

    @property
    def actor_id(self) -> str:
        return self.requested_by


class Cancel(_Signal):
    type: Literal["cancel"] = "cancel"
    reason: NonEmptyStr
    requested_by: NonEmptyStr = "system"

    @property
    def actor_id(self) -> str:
        return self.requested_by


class Escalate(_Signal):
    type: Literal["escalate"] = "escalate"
    reason: NonEmptyStr
    escalated_to: NonEmptyStr
    requested_by: NonEmptyStr = "system"

    @property
    def actor_id(self) -> str:
        return self.requested_by


class TimerFired(_Signal):
    """Emitted by the reminder scheduler, never by callers."""

    type: Literal["timerFired"] = "timerFired"
    item_kind: Literal["deadline", "court_date"]
    item_id: NonEmptyStr
    label: NonEmptyStr

    @property
    def actor_id(self) -> str:
        return "scheduler"


Signal = Annotated[
    Union[
        CompleteRequirement,
        TransitionStage,
        AddDeadline,
        RemoveDeadline,
        AddCourtDate,
        RemoveCourtDate,
        Pause,
        Resume,
        Cancel,
        Escalate,
    ],
    Field(discriminator="type"),
]

SIGNAL_TYPES: tuple[str, ...] = (
    "completeRequirement",
    "transitionStage",
    "addDeadline",
    "removeDeadline",
    "addCourtDate",
    "removeCourtDate",
    "pause",
    "resume",
    "cancel",
    "escalate",
)

_SIGNAL_ADAPTER: TypeAdapter[Signal] = TypeAdapter(Signal)


def parse_signal(signal_type: str, payload: Mapping[str, object] | None = None) -> Signal:
    """Validate a raw signal payload.

    Raises:
        ValidationError: the type is unknown or the payload is malformed.
    """

    if signal_type not in SIGNAL_TYPES:
        raise ValidationError(f"Unknown signal type: {signal_type!r}")
    data = dict(payload or {})
    declared = data.pop("type", signal_type)
    if declared != signal_type:
        raise ValidationError(f"Payload type {declared!r} does not match {signal_type!r}")
    try:
        return _SIGNAL_ADAPTER.validate_python({"type": signal_type, **data})
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {signal_type} payload: {e.error_count()} error(s)",
            errors=e.errors(include_url=False, include_context=False),
        ) from e
