#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the orchestrator components directly:

* load settings from `.env`
* start a labor case workflow
* complete the intake requirements and move to the next stage
* add a deadline and print the reminders it owes

State is persisted under `WORKFLOW_STATE_PATH` (default: `workflow_state/`).
"""

from __future__ import annotations

import argparse
from datetime import timedelta
from typing import Sequence

from stage_workflow_orchestrator.orchestrator.config import OrchestratorSettings
from stage_workflow_orchestrator.orchestrator.errors import WorkflowError
from stage_workflow_orchestrator.orchestrator.logging import configure_logging
from stage_workflow_orchestrator.orchestrator.runtime.service import WorkflowService
from stage_workflow_orchestrator.orchestrator.workflow.state_machine import utc_now


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a labor case workflow (example).")
    parser.add_argument("--case", default="case-1001", help="Case id used as the subject")
    parser.add_argument("--lawyer", default="lawyer-1", help="Actor recorded on every signal")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = OrchestratorSettings()
    configure_logging(settings.log_level)

    with WorkflowService.from_settings(settings) as service:
        try:
            handle = service.start(
                args.case,
                "labor-case",
                recipients=[args.lawyer],
                instance_id=f"labor-{args.case}",
            )
            print(f"Instance {handle.instance_id} at {handle.current_stage_id}")

            for requirement in service.get_pending_requirements(handle.instance_id):
                service.signal(
                    handle.instance_id,
                    "completeRequirement",
                    {
                        "requirementId": requirement.requirement_id,
                        "completedBy": args.lawyer,
                        "signalId": f"{handle.instance_id}:{requirement.requirement_id}",
                    },
                )

            phase = service.get_current_phase(handle.instance_id)
            if phase.stage_id == "case-filed":
                service.signal(
                    handle.instance_id,
                    "transitionStage",
                    {"targetStageId": "document-review", "requestedBy": args.lawyer},
                )

            service.signal(
                handle.instance_id,
                "addDeadline",
                {
                    "deadlineId": "statement-of-claim",
                    "title": "File statement of claim",
                    "dueAt": (utc_now() + timedelta(days=10)).isoformat(),
                    "addedBy": args.lawyer,
                },
            )
        except WorkflowError as e:
            print(f"{e.code}: {e}")
            return 1

        description = service.describe(handle.instance_id)
        print(f"Stage: {description.current_stage_name} ({description.progress_percent}%)")
        for timer in description.pending_timers:
            print(f"  {timer.item_id} {timer.label} at {timer.fire_at.isoformat()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
