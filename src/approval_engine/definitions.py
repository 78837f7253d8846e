"""Workflow Definition Store.

Definitions are validated once, when they are registered. Every update is
stored as a new immutable version; requests keep pointing at the version
they were submitted against.
"""

import logging
import threading
from dataclasses import replace
from typing import Dict, List, Optional

from .config import (
    ApproverType,
    ConditionOperator,
    EscalationTrigger,
    EscalationType,
    RequestType,
    StepAction,
)
from .errors import WorkflowNotFound, WorkflowValidationError
from .models import (
    ApprovalStep,
    ApprovalWorkflow,
    ApproverSpec,
    Condition,
    EscalationRule,
)

logger = logging.getLogger(__name__)

_PAYLOAD_FIELD = {
    ApproverType.SPECIFIC: "ids",
    ApproverType.ROLE: "roles",
    ApproverType.GROUP: "groups",
}


def _validate_conditions(conditions, where: str) -> List[str]:
    errors = []
    for condition in conditions:
        if not condition.field:
            errors.append(f"{where}: condition without a field")
        if condition.operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            if not isinstance(condition.value, (list, tuple, set, frozenset)):
                errors.append(
                    f"{where}: '{condition.operator.value}' on {condition.field} needs a list value"
                )
    return errors


def validate_workflow(workflow: ApprovalWorkflow) -> List[str]:
    """Return every definition problem found; an empty list means valid."""
    errors: List[str] = []
    if not workflow.workflow_id:
        errors.append("workflow_id is required")
    if not workflow.name:
        errors.append("name is required")
    if workflow.escalation_levels is not None and workflow.escalation_levels < 0:
        errors.append("escalation_levels must not be negative")
    if not workflow.steps:
        errors.append("at least one step is required")

    seen_ids = set()
    for index, step in enumerate(workflow.steps):
        where = f"step {index} ({step.name or step.step_id})"
        if step.step_id in seen_ids:
            errors.append(f"{where}: duplicate step_id")
        seen_ids.add(step.step_id)

        payload = _PAYLOAD_FIELD.get(step.approver.kind)
        if payload is not None and not getattr(step.approver, payload):
            errors.append(f"{where}: {step.approver.kind.value} approver needs {payload}")

        if step.time_limit_hours is not None and step.auto_approve_after_hours is not None:
            errors.append(f"{where}: time_limit_hours and auto_approve_after_hours are mutually exclusive")
        for attr in ("time_limit_hours", "auto_approve_after_hours"):
            hours = getattr(step, attr)
            if hours is not None and hours <= 0:
                errors.append(f"{where}: {attr} must be positive")

        if not step.allowed_actions:
            errors.append(f"{where}: at least one action must be allowed")
        errors.extend(_validate_conditions(step.conditions, where))

    errors.extend(_validate_conditions(workflow.auto_approve_conditions, "auto-approve"))
    for index, rule in enumerate(workflow.escalation_rules):
        where = f"escalation rule {index}"
        if rule.escalation_type == EscalationType.SPECIFIC_USER and not rule.target_ids:
            errors.append(f"{where}: specific_user escalation needs target_ids")
        errors.extend(_validate_conditions(rule.conditions, where))
    return errors


class WorkflowDefinitionStore:
    """Versioned, thread-safe catalogue of workflow definitions."""

    def __init__(self, workflows: Optional[List[ApprovalWorkflow]] = None) -> None:
        self._versions: Dict[str, List[ApprovalWorkflow]] = {}
        self._lock = threading.Lock()
        for workflow in workflows or []:
            self.register(workflow)

    def register(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        """Validate and store a new workflow as version 1."""
        errors = validate_workflow(workflow)
        if errors:
            raise WorkflowValidationError(errors=errors)
        stored = workflow.with_version(1)
        with self._lock:
            if workflow.workflow_id in self._versions:
                raise WorkflowValidationError(
                    errors=[f"workflow {workflow.workflow_id} already registered"]
                )
            self._versions[workflow.workflow_id] = [stored]
        logger.info(
            "Registered workflow %s (%s, %d steps)",
            stored.workflow_id,
            stored.request_type.value,
            stored.total_steps,
        )
        return stored

    def update(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        """Store ``workflow`` as the next version of an existing definition."""
        errors = validate_workflow(workflow)
        if errors:
            raise WorkflowValidationError(errors=errors)
        with self._lock:
            versions = self._versions.get(workflow.workflow_id)
            if not versions:
                raise WorkflowNotFound(f"Unknown workflow: {workflow.workflow_id}")
            stored = workflow.with_version(versions[-1].version + 1)
            versions.append(stored)
        logger.info("Workflow %s updated to version %d", stored.workflow_id, stored.version)
        return stored

    def deactivate(self, workflow_id: str) -> ApprovalWorkflow:
        """Retire a workflow. In-flight requests keep their bound version."""
        with self._lock:
            versions = self._versions.get(workflow_id)
            if not versions:
                raise WorkflowNotFound(f"Unknown workflow: {workflow_id}")
            latest = versions[-1]
            stored = replace(latest, is_active=False, version=latest.version + 1)
            versions.append(stored)
        logger.info("Workflow %s deactivated", workflow_id)
        return stored

    def get(self, workflow_id: str, version: Optional[int] = None) -> ApprovalWorkflow:
        with self._lock:
            versions = list(self._versions.get(workflow_id, ()))
        if not versions:
            raise WorkflowNotFound(f"Unknown workflow: {workflow_id}")
        if version is None:
            return versions[-1]
        for workflow in versions:
            if workflow.version == version:
                return workflow
        raise WorkflowNotFound(f"Workflow {workflow_id} has no version {version}")

    def for_type(self, request_type: RequestType) -> ApprovalWorkflow:
        """The first-registered active workflow handling ``request_type``."""
        request_type = RequestType(request_type)
        for workflow in self.list_workflows():
            if workflow.request_type == request_type:
                return workflow
        raise WorkflowNotFound(f"No active workflow for {request_type.value}")

    def list_workflows(self, include_inactive: bool = False) -> List[ApprovalWorkflow]:
        """Latest version of every workflow, in registration order."""
        with self._lock:
            latest = [versions[-1] for versions in self._versions.values()]
        if include_inactive:
            return latest
        return [w for w in latest if w.is_active]

    def versions(self, workflow_id: str) -> List[ApprovalWorkflow]:
        with self._lock:
            return list(self._versions.get(workflow_id, ()))


# ── Built-in catalogue ───────────────────────────────────────────────


def default_workflows() -> List[ApprovalWorkflow]:
    """Starter definitions for common request types."""
    return [
        ApprovalWorkflow(
            workflow_id="leave-standard",
            name="Standard Leave Approval",
            request_type=RequestType.LEAVE_REQUEST,
            description="Direct manager, then group leader for leave longer than five days.",
            allow_delegation=True,
            steps=(
                ApprovalStep(
                    step_id="leave-manager",
                    name="Manager review",
                    approver=ApproverSpec.of(ApproverType.MANAGER),
                    time_limit_hours=24,
                ),
                ApprovalStep(
                    step_id="leave-group-leader",
                    name="Group leader review",
                    approver=ApproverSpec.of(ApproverType.GROUP_LEADER),
                    conditions=(Condition("days", ConditionOperator.GREATER_THAN, 5),),
                    time_limit_hours=48,
                ),
            ),
            escalation_rules=(
                EscalationRule(trigger=EscalationTrigger.TIME_LIMIT,
                               escalation_type=EscalationType.NEXT_LEVEL),
            ),
            escalation_levels=2,
        ),
        ApprovalWorkflow(
            workflow_id="expense-standard",
            name="Expense Claim Approval",
            request_type=RequestType.EXPENSE_CLAIM,
            description="Small claims pass automatically; large ones need finance.",
            allow_delegation=True,
            auto_approve_conditions=(
                Condition("amount", ConditionOperator.LESS_THAN, 100),
            ),
            steps=(
                ApprovalStep(
                    step_id="expense-manager",
                    name="Manager review",
                    approver=ApproverSpec.of(ApproverType.MANAGER),
                    time_limit_hours=48,
                ),
                ApprovalStep(
                    step_id="expense-finance",
                    name="Finance review",
                    approver=ApproverSpec.role("finance"),
                    conditions=(Condition("amount", ConditionOperator.GREATER_THAN, 1000),),
                    delegable=False,
                ),
            ),
            escalation_rules=(
                EscalationRule(trigger=EscalationTrigger.TIME_LIMIT,
                               escalation_type=EscalationType.ADMIN,
                               notify_admins=True),
            ),
            escalation_levels=1,
        ),
        ApprovalWorkflow(
            workflow_id="delegation-standard",
            name="Delegation Request Approval",
            request_type=RequestType.DELEGATION_REQUEST,
            steps=(
                ApprovalStep(
                    step_id="delegation-upper-leader",
                    name="Upper group leader review",
                    approver=ApproverSpec.of(ApproverType.UPPER_GROUP_LEADER),
                    allowed_actions=(StepAction.APPROVE, StepAction.REJECT),
                ),
            ),
            can_self_approve=True,
        ),
    ]
