"""Read-only monitoring API for the workflow orchestrator.

Design intent:
- Keep workflow logic in `stage_workflow_orchestrator.orchestrator.*`
- Expose queries only; signals go through the service or the CLI
"""

from __future__ import annotations

__all__ = ["create_app"]

from stage_workflow_orchestrator.server.app import create_app
