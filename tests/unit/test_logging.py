from __future__ import annotations

import json
import logging
import sys

from stage_workflow_orchestrator.orchestrator.logging import JsonFormatter


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="stage_workflow_orchestrator.test",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Activity failed; retrying",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_json_with_extra_fields() -> None:
    line = JsonFormatter().format(_record(instance_id="wf-1", attempt=2))
    payload = json.loads(line)

    assert payload["level"] == "WARNING"
    assert payload["message"] == "Activity failed; retrying"
    assert payload["extra"] == {"instance_id": "wf-1", "attempt": 2}
    assert "exception" not in payload


def test_formatter_includes_exceptions() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in payload["exception"]
    assert "extra" not in payload
