"""Workflow templates and the stores that supply them.

A template is an ordered list of stages. Stage order is the only legal forward
transition graph; anything else needs an explicit override.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from stage_workflow_orchestrator.orchestrator.errors import (
    TemplateNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class _TemplateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class RequirementDefinition(_TemplateModel):
    requirement_id: str = Field(min_length=1)
    name: str
    is_required: bool = True


class StageDefinition(_TemplateModel):
    stage_id: str = Field(min_length=1)
    name: str
    requirements: tuple[RequirementDefinition, ...] = ()
    is_initial: bool = False
    is_final: bool = False


class WorkflowTemplate(_TemplateModel):
    template_id: str = Field(min_length=1)
    name: str = ""
    kind: str = Field(default="case", description="case | onboarding | offboarding | approval")
    stages: tuple[StageDefinition, ...]

    @model_validator(mode="after")
    def _check_stage_graph(self) -> WorkflowTemplate:
        if not self.stages:
            raise ValueError("a template needs at least one stage")

        stage_ids = [s.stage_id for s in self.stages]
        if len(set(stage_ids)) != len(stage_ids):
            raise ValueError(f"duplicate stage ids in template {self.template_id!r}")

        requirement_ids = [r.requirement_id for s in self.stages for r in s.requirements]
        if len(set(requirement_ids)) != len(requirement_ids):
            raise ValueError(f"duplicate requirement ids in template {self.template_id!r}")

        if sum(1 for s in self.stages if s.is_initial) > 1:
            raise ValueError("at most one stage may be marked initial")
        if sum(1 for s in self.stages if s.is_final) > 1:
            raise ValueError("at most one stage may be marked final")
        return self

    @property
    def stage_ids(self) -> list[str]:
        return [s.stage_id for s in self.stages]

    @property
    def initial_stage(self) -> StageDefinition:
        return next((s for s in self.stages if s.is_initial), self.stages[0])

    @property
    def final_stage(self) -> StageDefinition:
        return next((s for s in self.stages if s.is_final), self.stages[-1])

    def has_stage(self, stage_id: str) -> bool:
        return any(s.stage_id == stage_id for s in self.stages)

    def stage(self, stage_id: str) -> StageDefinition:
        for s in self.stages:
            if s.stage_id == stage_id:
                return s
        raise KeyError(stage_id)

    def stage_index(self, stage_id: str) -> int:
        return self.stage_ids.index(stage_id)

    def next_stage(self, stage_id: str) -> StageDefinition | None:
        idx = self.stage_index(stage_id)
        if idx + 1 < len(self.stages):
            return self.stages[idx + 1]
        return None

    def find_requirement(
        self, requirement_id: str
    ) -> tuple[StageDefinition, RequirementDefinition]:
        for s in self.stages:
            for r in s.requirements:
                if r.requirement_id == requirement_id:
                    return s, r
        raise KeyError(requirement_id)

    def missing_requirements(self, stage_id: str, completed: Iterable[str]) -> list[str]:
        """Required requirement ids of ``stage_id`` that are not in ``completed``."""

        done = set(completed)
        return [
            r.requirement_id
            for r in self.stage(stage_id).requirements
            if r.is_required and r.requirement_id not in done
        ]


class TemplateStore(Protocol):
    def load_template(self, template_id: str) -> WorkflowTemplate: ...


class InMemoryTemplateStore:
    """Templates held in memory. Used for presets and tests."""

    def __init__(self, templates: Iterable[WorkflowTemplate] = ()) -> None:
        self._templates: dict[str, WorkflowTemplate] = {t.template_id: t for t in templates}
        self._lock = threading.Lock()

    def add(self, template: WorkflowTemplate) -> None:
        with self._lock:
            self._templates[template.template_id] = template

    def list(self) -> list[WorkflowTemplate]:
        with self._lock:
            return list(self._templates.values())

    def load_template(self, template_id: str) -> WorkflowTemplate:
        with self._lock:
            template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template


class FileTemplateStore:
    """Load templates from ``<directory>/<template_id>.json``.

    Falls back to another store (typically the presets) when no file exists.
    """

    def __init__(self, directory: Path, *, fallback: TemplateStore | None = None) -> None:
        self._directory = directory
        self._fallback = fallback

    def _path_for(self, template_id: str) -> Path:
        if "/" in template_id or "\\" in template_id or template_id.startswith("."):
            raise ValidationError(f"Invalid template id: {template_id!r}")
        return self._directory / f"{template_id}.json"

    def load_template(self, template_id: str) -> WorkflowTemplate:
        path = self._path_for(template_id)
        if not path.exists():
            if self._fallback is not None:
                return self._fallback.load_template(template_id)
            raise TemplateNotFoundError(template_id)

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            template = WorkflowTemplate.model_validate(raw)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.error("Invalid template file", extra={"path": str(path)})
            raise ValidationError(f"Invalid template {template_id!r}: {e}") from e

        if template.template_id != template_id:
            raise ValidationError(
                f"Template file {path.name} declares id {template.template_id!r}"
            )
        return template

    def save(self, template: WorkflowTemplate) -> Path:
        path = self._path_for(template.template_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = template.model_dump(mode="json", by_alias=True)
        path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        return path

    def list(self) -> list[WorkflowTemplate]:
        """Templates on disk, plus fallback templates that no file overrides."""

        found: dict[str, WorkflowTemplate] = {}
        fallback_list = getattr(self._fallback, "list", None)
        if callable(fallback_list):
            found.update({t.template_id: t for t in fallback_list()})
        if self._directory.exists():
            for path in sorted(self._directory.glob("*.json")):
                found[path.stem] = self.load_template(path.stem)
        return list(found.values())
