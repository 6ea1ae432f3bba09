"""Built-in workflow templates.

These mirror the stage lists the firm uses out of the box: two litigation
pipelines plus employee onboarding and offboarding.
"""

from __future__ import annotations

from stage_workflow_orchestrator.orchestrator.templates import (
    InMemoryTemplateStore,
    RequirementDefinition,
    StageDefinition,
    WorkflowTemplate,
)


def _req(requirement_id: str, name: str, *, required: bool = True) -> RequirementDefinition:
    return RequirementDefinition(requirement_id=requirement_id, name=name, is_required=required)


LABOR_CASE = WorkflowTemplate(
    template_id="labor-case",
    name="Labor Case Workflow",
    kind="case",
    stages=(
        StageDefinition(
            stage_id="case-filed",
            name="Case Filed",
            is_initial=True,
            requirements=(
                _req("labor-upload-retainer", "Upload signed retainer"),
                _req("labor-conflict-check", "Conflict check cleared"),
            ),
        ),
        StageDefinition(
            stage_id="document-review",
            name="Document Review",
            requirements=(
                _req("labor-employment-contract", "Employment contract reviewed"),
                _req("labor-payslips", "Payslips collected", required=False),
            ),
        ),
        StageDefinition(stage_id="initial-hearing", name="Initial Hearing"),
        StageDefinition(
            stage_id="evidence-phase",
            name="Evidence Phase",
            requirements=(_req("labor-evidence-bundle", "Evidence bundle submitted"),),
        ),
        StageDefinition(stage_id="closing-arguments", name="Closing Arguments"),
        StageDefinition(stage_id="judgment", name="Judgment", is_final=True),
    ),
)

COMMERCIAL_CASE = WorkflowTemplate(
    template_id="commercial-case",
    name="Commercial Case Workflow",
    kind="case",
    stages=(
        StageDefinition(
            stage_id="case-registration",
            name="Case Registration",
            is_initial=True,
            requirements=(_req("commercial-upload-retainer", "Upload signed retainer"),),
        ),
        StageDefinition(stage_id="defendant-response", name="Defendant Response"),
        StageDefinition(
            stage_id="discovery",
            name="Discovery",
            requirements=(_req("commercial-document-exchange", "Documents exchanged"),),
        ),
        StageDefinition(stage_id="settlement-attempt", name="Settlement Attempt"),
        StageDefinition(stage_id="trial", name="Trial"),
        StageDefinition(stage_id="verdict", name="Verdict", is_final=True),
    ),
)

EMPLOYEE_ONBOARDING = WorkflowTemplate(
    template_id="employee-onboarding",
    name="Employee Onboarding",
    kind="onboarding",
    stages=(
        StageDefinition(
            stage_id="pre-boarding",
            name="Pre-boarding",
            requirements=(
                _req("onboarding-welcome-email", "Welcome email sent"),
                _req("onboarding-accounts", "System accounts created"),
                _req("onboarding-equipment", "Equipment assigned"),
            ),
        ),
        StageDefinition(
            stage_id="documentation",
            name="Documentation",
            requirements=(
                _req("onboarding-documents-submitted", "Documents submitted"),
                _req("onboarding-documents-verified", "Documents verified"),
            ),
        ),
        StageDefinition(
            stage_id="training",
            name="Training",
            requirements=(_req("onboarding-mandatory-training", "Mandatory training completed"),),
        ),
        StageDefinition(
            stage_id="probation",
            name="Probation",
            requirements=(
                _req("onboarding-30-day-review", "30-day review"),
                _req("onboarding-60-day-review", "60-day review", required=False),
                _req("onboarding-final-review", "Final probation review"),
            ),
        ),
        StageDefinition(stage_id="completion", name="Completion", is_final=True),
    ),
)

EMPLOYEE_OFFBOARDING = WorkflowTemplate(
    template_id="employee-offboarding",
    name="Employee Offboarding",
    kind="offboarding",
    stages=(
        StageDefinition(
            stage_id="notification",
            name="Notification",
            requirements=(_req("offboarding-departments-notified", "Departments notified"),),
        ),
        StageDefinition(
            stage_id="knowledge-transfer",
            name="Knowledge Transfer",
            requirements=(_req("offboarding-handover", "Handover completed"),),
        ),
        StageDefinition(
            stage_id="access-revocation",
            name="Access Revocation",
            requirements=(_req("offboarding-access-revoked", "System access revoked"),),
        ),
        StageDefinition(
            stage_id="equipment-return",
            name="Equipment Return",
            requirements=(_req("offboarding-equipment-returned", "Equipment returned"),),
        ),
        StageDefinition(
            stage_id="exit-interview",
            name="Exit Interview",
            requirements=(
                _req("offboarding-exit-interview", "Exit interview held", required=False),
            ),
        ),
        StageDefinition(
            stage_id="clearance",
            name="Clearance",
            is_final=True,
            requirements=(
                _req("offboarding-clearance-certificate", "Clearance certificate issued"),
            ),
        ),
    ),
)

PRESET_TEMPLATES: tuple[WorkflowTemplate, ...] = (
    LABOR_CASE,
    COMMERCIAL_CASE,
    EMPLOYEE_ONBOARDING,
    EMPLOYEE_OFFBOARDING,
)


def preset_store() -> InMemoryTemplateStore:
    return InMemoryTemplateStore(PRESET_TEMPLATES)
