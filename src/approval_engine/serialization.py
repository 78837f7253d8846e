"""JSON-friendly conversion of engine records.

Used by the SQL repository, the HTTP layer and the CLI's definition
loader. Enum members are stored by value and datetimes as ISO-8601.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from .config import (
    ApproverType,
    ConditionOperator,
    DelegationStatus,
    EscalationTrigger,
    EscalationType,
    LogicalOperator,
    Priority,
    RequestStatus,
    RequestType,
    StepAction,
)
from .models import (
    ApprovalRequest,
    ApprovalStep,
    ApprovalWorkflow,
    ApproverSpec,
    Condition,
    DecisionRecord,
    DelegationInfo,
    EscalationRule,
)


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ── Definitions ──────────────────────────────────────────────────────


def condition_to_dict(condition: Condition) -> Dict[str, Any]:
    value = condition.value
    if isinstance(value, (tuple, set, frozenset)):
        value = list(value)
    return {
        "field": condition.field,
        "operator": ConditionOperator(condition.operator).value,
        "value": value,
        "logical_operator": LogicalOperator(condition.logical_operator).value,
    }


def condition_from_dict(data: Dict[str, Any]) -> Condition:
    value = data.get("value")
    if isinstance(value, list):
        value = tuple(value)
    return Condition(
        field=data["field"],
        operator=ConditionOperator(data["operator"]),
        value=value,
        logical_operator=LogicalOperator(data.get("logical_operator", "and")),
    )


def step_to_dict(step: ApprovalStep) -> Dict[str, Any]:
    return {
        "step_id": step.step_id,
        "name": step.name,
        "approver": {
            "kind": step.approver.kind.value,
            "ids": list(step.approver.ids),
            "roles": list(step.approver.roles),
            "groups": list(step.approver.groups),
        },
        "required": step.required,
        "delegable": step.delegable,
        "unanimous": step.unanimous,
        "time_limit_hours": step.time_limit_hours,
        "auto_approve_after_hours": step.auto_approve_after_hours,
        "conditions": [condition_to_dict(c) for c in step.conditions],
        "allowed_actions": [StepAction(a).value for a in step.allowed_actions],
    }


def step_from_dict(data: Dict[str, Any]) -> ApprovalStep:
    approver = data.get("approver") or {}
    kwargs: Dict[str, Any] = {}
    if data.get("step_id"):
        kwargs["step_id"] = data["step_id"]
    if "allowed_actions" in data:
        kwargs["allowed_actions"] = tuple(StepAction(a) for a in data["allowed_actions"])
    return ApprovalStep(
        approver=ApproverSpec(
            kind=ApproverType(approver["kind"]),
            ids=tuple(approver.get("ids", ())),
            roles=tuple(approver.get("roles", ())),
            groups=tuple(approver.get("groups", ())),
        ),
        name=data.get("name", ""),
        required=data.get("required", True),
        delegable=data.get("delegable", True),
        unanimous=data.get("unanimous", False),
        time_limit_hours=data.get("time_limit_hours"),
        auto_approve_after_hours=data.get("auto_approve_after_hours"),
        conditions=tuple(condition_from_dict(c) for c in data.get("conditions", ())),
        **kwargs,
    )


def rule_to_dict(rule: EscalationRule) -> Dict[str, Any]:
    return {
        "trigger": rule.trigger.value,
        "escalation_type": rule.escalation_type.value,
        "target_ids": list(rule.target_ids),
        "conditions": [condition_to_dict(c) for c in rule.conditions],
        "notify_requester": rule.notify_requester,
        "notify_approvers": rule.notify_approvers,
        "notify_admins": rule.notify_admins,
    }


def rule_from_dict(data: Dict[str, Any]) -> EscalationRule:
    return EscalationRule(
        trigger=EscalationTrigger(data.get("trigger", "time_limit")),
        escalation_type=EscalationType(data.get("escalation_type", "next_level")),
        target_ids=tuple(data.get("target_ids", ())),
        conditions=tuple(condition_from_dict(c) for c in data.get("conditions", ())),
        notify_requester=data.get("notify_requester", True),
        notify_approvers=data.get("notify_approvers", True),
        notify_admins=data.get("notify_admins", False),
    )


def workflow_to_dict(workflow: ApprovalWorkflow) -> Dict[str, Any]:
    return {
        "workflow_id": workflow.workflow_id,
        "name": workflow.name,
        "request_type": workflow.request_type.value,
        "version": workflow.version,
        "description": workflow.description,
        "can_self_approve": workflow.can_self_approve,
        "allow_delegation": workflow.allow_delegation,
        "auto_approve_conditions": [condition_to_dict(c) for c in workflow.auto_approve_conditions],
        "escalation_rules": [rule_to_dict(r) for r in workflow.escalation_rules],
        "escalation_levels": workflow.escalation_levels,
        "is_active": workflow.is_active,
        "steps": [step_to_dict(s) for s in workflow.steps],
    }


def workflow_from_dict(data: Dict[str, Any]) -> ApprovalWorkflow:
    return ApprovalWorkflow(
        workflow_id=data["workflow_id"],
        name=data.get("name", ""),
        request_type=RequestType(data["request_type"]),
        steps=tuple(step_from_dict(s) for s in data.get("steps", ())),
        version=data.get("version", 1),
        can_self_approve=data.get("can_self_approve", False),
        allow_delegation=data.get("allow_delegation", False),
        auto_approve_conditions=tuple(
            condition_from_dict(c) for c in data.get("auto_approve_conditions", ())
        ),
        escalation_rules=tuple(rule_from_dict(r) for r in data.get("escalation_rules", ())),
        escalation_levels=data.get("escalation_levels"),
        is_active=data.get("is_active", True),
        description=data.get("description", ""),
    )


# ── Records ──────────────────────────────────────────────────────────


def delegation_to_dict(info: DelegationInfo) -> Dict[str, Any]:
    return {
        "delegation_id": info.delegation_id,
        "delegator_id": info.delegator_id,
        "delegate_id": info.delegate_id,
        "request_type": info.request_type.value,
        "start_date": _dt(info.start_date),
        "end_date": _dt(info.end_date),
        "reason": info.reason,
        "status": info.status.value,
        "approver_ids": list(info.approver_ids),
        "approved_by": info.approved_by,
        "request_id": info.request_id,
        "created_at": _dt(info.created_at),
        "updated_at": _dt(info.updated_at),
    }


def delegation_from_dict(data: Dict[str, Any]) -> DelegationInfo:
    return DelegationInfo(
        delegation_id=data["delegation_id"],
        delegator_id=data["delegator_id"],
        delegate_id=data["delegate_id"],
        request_type=RequestType(data["request_type"]),
        start_date=_parse_dt(data["start_date"]),
        end_date=_parse_dt(data["end_date"]),
        reason=data.get("reason", ""),
        status=DelegationStatus(data["status"]),
        approver_ids=tuple(data.get("approver_ids", ())),
        approved_by=data.get("approved_by"),
        request_id=data.get("request_id"),
        created_at=_parse_dt(data["created_at"]),
        updated_at=_parse_dt(data["updated_at"]),
    )


def decision_to_dict(record: DecisionRecord) -> Dict[str, Any]:
    return {
        "record_id": record.record_id,
        "request_id": record.request_id,
        "step_index": record.step_index,
        "actor_id": record.actor_id,
        "action": record.action,
        "comment": record.comment,
        "on_behalf_of": record.on_behalf_of,
        "system": record.system,
        "created_at": _dt(record.created_at),
    }


def decision_from_dict(data: Dict[str, Any]) -> DecisionRecord:
    return DecisionRecord(
        record_id=data["record_id"],
        request_id=data["request_id"],
        step_index=data["step_index"],
        actor_id=data["actor_id"],
        action=data["action"],
        comment=data.get("comment", ""),
        on_behalf_of=data.get("on_behalf_of"),
        system=data.get("system", False),
        created_at=_parse_dt(data["created_at"]),
    )


def request_to_dict(request: ApprovalRequest, include_internal: bool = True) -> Dict[str, Any]:
    """Serialize a request.

    With ``include_internal=False`` the resolution error text is replaced by
    a ``resolution_pending`` flag so it never reaches requesters.
    """
    data = {
        "request_id": request.request_id,
        "request_type": request.request_type.value,
        "requester_id": request.requester_id,
        "requester_role": request.requester_role,
        "requester_group": request.requester_group,
        "title": request.title,
        "priority": request.priority.value,
        "request_data": dict(request.request_data),
        "workflow_id": request.workflow_id,
        "workflow_version": request.workflow_version,
        "status": request.status.value,
        "current_step": request.current_step,
        "total_steps": request.total_steps,
        "created_at": _dt(request.created_at),
        "submitted_at": _dt(request.submitted_at),
        "due_date": _dt(request.due_date),
        "step_started_at": _dt(request.step_started_at),
        "step_actors": sorted(request.step_actors),
        "escalation_count": request.escalation_count,
        "escalated_actors": (
            sorted(request.escalated_actors) if request.escalated_actors is not None else None
        ),
        "delegation_info": (
            delegation_to_dict(request.delegation_info) if request.delegation_info else None
        ),
        "is_delegated": request.is_delegated,
        "status_reason": request.status_reason,
        "rejected_by": request.rejected_by,
        "completed_at": _dt(request.completed_at),
        "history": [decision_to_dict(r) for r in request.history],
    }
    if include_internal:
        data["resolution_error"] = request.resolution_error
    else:
        data["resolution_pending"] = request.resolution_error is not None
    return data


def request_from_dict(data: Dict[str, Any]) -> ApprovalRequest:
    escalated = data.get("escalated_actors")
    delegation = data.get("delegation_info")
    return ApprovalRequest(
        request_id=data["request_id"],
        request_type=RequestType(data["request_type"]),
        requester_id=data["requester_id"],
        requester_role=data.get("requester_role"),
        requester_group=data.get("requester_group"),
        title=data.get("title", ""),
        priority=Priority(data.get("priority", "medium")),
        request_data=dict(data.get("request_data") or {}),
        workflow_id=data["workflow_id"],
        workflow_version=data["workflow_version"],
        status=RequestStatus(data["status"]),
        current_step=data["current_step"],
        total_steps=data["total_steps"],
        created_at=_parse_dt(data["created_at"]),
        submitted_at=_parse_dt(data.get("submitted_at")),
        due_date=_parse_dt(data.get("due_date")),
        step_started_at=_parse_dt(data.get("step_started_at")),
        step_actors=frozenset(data.get("step_actors", ())),
        escalation_count=data.get("escalation_count", 0),
        escalated_actors=frozenset(escalated) if escalated is not None else None,
        delegation_info=delegation_from_dict(delegation) if delegation else None,
        is_delegated=data.get("is_delegated", False),
        resolution_error=data.get("resolution_error"),
        status_reason=data.get("status_reason"),
        rejected_by=data.get("rejected_by"),
        completed_at=_parse_dt(data.get("completed_at")),
        history=[decision_from_dict(r) for r in data.get("history", ())],
    )
