"""CLI entrypoint for the workflow orchestrator."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from stage_workflow_orchestrator import __version__
from stage_workflow_orchestrator.orchestrator.config import OrchestratorSettings
from stage_workflow_orchestrator.orchestrator.errors import WorkflowError
from stage_workflow_orchestrator.orchestrator.logging import configure_logging
from stage_workflow_orchestrator.orchestrator.runtime.gateway import SignalResult
from stage_workflow_orchestrator.orchestrator.runtime.service import WorkflowService
from stage_workflow_orchestrator.orchestrator.workflow.events import SIGNAL_TYPES

logger = logging.getLogger(__name__)


def _print_json(value: Any) -> None:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    elif isinstance(value, list):
        value = [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value]
    print(json.dumps(value, indent=2, ensure_ascii=False, default=str))


def _signal_result_json(result: SignalResult) -> dict[str, Any]:
    return {
        "instance_id": result.instance_id,
        "event_type": result.event_type,
        "status": result.status,
        "sequence": result.sequence,
        "run_state": result.run_state.value,
        "current_stage_id": result.current_stage_id,
        "result": result.result,
        "detail": result.detail,
    }


def _load_payload(args: argparse.Namespace) -> dict[str, Any]:
    if args.payload_file is not None:
        text = Path(args.payload_file).read_text(encoding="utf-8")
    else:
        text = args.payload or "{}"
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError("signal payload must be a JSON object")
    return payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestrator",
        description="Durable stage workflow orchestrator",
    )
    parser.add_argument(
        "--version", action="version", version=f"stage-workflow-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("templates", help="List available workflow templates")

    start = subparsers.add_parser("start", help="Start a workflow instance")
    start.add_argument("--template", dest="template_id", required=True, help="Template id")
    start.add_argument("--subject", dest="subject_id", required=True, help="Case or employee id")
    start.add_argument(
        "--recipient",
        dest="recipients",
        action="append",
        default=None,
        help="Notification recipient (repeatable; defaults to WORKFLOW_DEFAULT_RECIPIENTS)",
    )
    start.add_argument(
        "--instance-id",
        default=None,
        help="Explicit instance id; makes the start idempotent",
    )
    start.add_argument("--started-by", default="system", help="Actor recorded in the audit log")

    signal = subparsers.add_parser("signal", help="Send a signal to an instance")
    signal.add_argument("instance_id", help="Workflow instance id")
    signal.add_argument("signal_type", choices=SIGNAL_TYPES, help="Signal type")
    payload_group = signal.add_mutually_exclusive_group()
    payload_group.add_argument(
        "--payload",
        default=None,
        help='Signal payload as JSON, e.g. \'{"requirementId": "r1", "completedBy": "u1"}\'',
    )
    payload_group.add_argument("--payload-file", default=None, help="Read the payload from a file")

    for name, help_text in (
        ("describe", "Operator summary of an instance"),
        ("state", "Full committed state of an instance"),
        ("pending", "Requirements still open in the current stage"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("instance_id", help="Workflow instance id")

    history = subparsers.add_parser("history", help="Audit ledger of an instance")
    history.add_argument("instance_id", help="Workflow instance id")
    history.add_argument(
        "--summary",
        action="store_true",
        help="Print the compliance summary instead of the raw ledger",
    )

    run_timers = subparsers.add_parser("run-timers", help="Fire due reminders")
    run_timers.add_argument(
        "--once", action="store_true", help="Fire what is due now and exit instead of polling"
    )
    run_timers.add_argument(
        "--poll-seconds",
        type=float,
        default=None,
        help="Polling interval (defaults to WORKFLOW_TIMER_POLL_SECONDS)",
    )

    return parser


def _run(
    args: argparse.Namespace,
    settings: OrchestratorSettings,
    service: WorkflowService,
    payload: dict[str, Any] | None,
) -> int:
    if args.command == "templates":
        for template in service.list_templates():
            stages = " -> ".join(s.stage_id for s in template.stages)
            print(f"{template.template_id}\t{template.kind}\t{template.name}\t{stages}")
        return 0

    if args.command == "start":
        handle = service.start(
            args.subject_id,
            args.template_id,
            recipients=args.recipients,
            started_by=args.started_by,
            instance_id=args.instance_id,
        )
        _print_json(handle)
        return 0

    if args.command == "signal":
        result = service.signal(args.instance_id, args.signal_type, payload)
        _print_json(_signal_result_json(result))
        return 0

    if args.command == "describe":
        _print_json(service.describe(args.instance_id))
        return 0

    if args.command == "state":
        _print_json(service.get_state(args.instance_id))
        return 0

    if args.command == "pending":
        _print_json(service.get_pending_requirements(args.instance_id))
        return 0

    if args.command == "history":
        if args.summary:
            _print_json(service.compliance_report(args.instance_id))
        else:
            _print_json(service.get_history(args.instance_id))
        return 0

    if args.command == "run-timers":
        if args.once:
            service.recover()
            fired = service.tick()
            print(f"Fired {len(fired)} timer(s)")
            return 0
        poll = args.poll_seconds or settings.timer_poll_seconds
        stop = threading.Event()
        try:
            service.run_timers(poll_seconds=poll, stop=stop)
        except KeyboardInterrupt:
            stop.set()
        return 0

    logger.error("Unknown command", extra={"command": args.command})
    return 2


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    payload: dict[str, Any] | None = None
    if args.command == "signal":
        try:
            payload = _load_payload(args)
        except (OSError, ValueError) as e:
            print(f"Invalid payload: {e}", file=sys.stderr)
            return 2

    try:
        with WorkflowService.from_settings(settings) as service:
            return _run(args, settings, service, payload)

    except WorkflowError as e:
        logger.warning(str(e), extra={"code": e.code})
        print(f"{e.code}: {e}", file=sys.stderr)
        for detail in getattr(e, "errors", None) or []:
            print(f"  {detail}", file=sys.stderr)
        return 1

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
