"""Stage Workflow Orchestrator.

A durable, signal-driven engine that moves long-running business processes
(legal cases, employee onboarding and offboarding, approvals) through
configurable stages, with reliable deadline and court-date reminders.
"""

__version__ = "0.1.0"

from stage_workflow_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
