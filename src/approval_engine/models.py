"""Approval Workflow & Delegation Engine - Data Model.

Workflow definitions (``ApproverSpec``, ``Condition``, ``ApprovalStep``,
``EscalationRule``, ``ApprovalWorkflow``) are frozen: a request binds to a
workflow version and later edits create new versions instead of mutating
the one in flight. ``ApprovalRequest`` and ``DelegationInfo`` are mutable
records owned by the engine and the delegation registry.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .config import (
    ALL_STEP_ACTIONS,
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


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Definitions ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class ApproverSpec:
    """Tagged approver specification.

    ``kind`` selects which payload field is read: ``ids`` for SPECIFIC,
    ``roles`` for ROLE, ``groups`` for GROUP. The other kinds are resolved
    from the requester's position in the organisation and carry no payload.
    """

    kind: ApproverType
    ids: Tuple[str, ...] = ()
    roles: Tuple[str, ...] = ()
    groups: Tuple[str, ...] = ()

    @classmethod
    def specific(cls, *ids: str) -> "ApproverSpec":
        return cls(kind=ApproverType.SPECIFIC, ids=tuple(ids))

    @classmethod
    def role(cls, *roles: str) -> "ApproverSpec":
        return cls(kind=ApproverType.ROLE, roles=tuple(roles))

    @classmethod
    def group(cls, *groups: str) -> "ApproverSpec":
        return cls(kind=ApproverType.GROUP, groups=tuple(groups))

    @classmethod
    def of(cls, kind: ApproverType) -> "ApproverSpec":
        return cls(kind=kind)


@dataclass(frozen=True)
class Condition:
    """A single ``field operator value`` predicate over request data."""

    field: str
    operator: ConditionOperator
    value: Any = None
    logical_operator: LogicalOperator = LogicalOperator.AND


@dataclass(frozen=True)
class ApprovalStep:
    """One stage of a workflow."""

    approver: ApproverSpec
    step_id: str = field(default_factory=_new_id)
    name: str = ""
    required: bool = True
    delegable: bool = True
    unanimous: bool = False
    time_limit_hours: Optional[float] = None
    auto_approve_after_hours: Optional[float] = None
    conditions: Tuple[Condition, ...] = ()
    allowed_actions: Tuple[StepAction, ...] = ALL_STEP_ACTIONS

    def allows(self, action: StepAction) -> bool:
        return action in self.allowed_actions


@dataclass(frozen=True)
class EscalationRule:
    """How a stalled step is escalated."""

    trigger: EscalationTrigger = EscalationTrigger.TIME_LIMIT
    escalation_type: EscalationType = EscalationType.NEXT_LEVEL
    target_ids: Tuple[str, ...] = ()
    conditions: Tuple[Condition, ...] = ()
    notify_requester: bool = True
    notify_approvers: bool = True
    notify_admins: bool = False


@dataclass(frozen=True)
class ApprovalWorkflow:
    """Immutable, versioned workflow definition."""

    workflow_id: str
    name: str
    request_type: RequestType
    steps: Tuple[ApprovalStep, ...] = ()
    version: int = 1
    can_self_approve: bool = False
    allow_delegation: bool = False
    auto_approve_conditions: Tuple[Condition, ...] = ()
    escalation_rules: Tuple[EscalationRule, ...] = ()
    escalation_levels: Optional[int] = None
    is_active: bool = True
    description: str = ""

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, index: int) -> ApprovalStep:
        return self.steps[index]

    def with_version(self, version: int) -> "ApprovalWorkflow":
        return replace(self, version=version)


# ── Records ──────────────────────────────────────────────────────────


@dataclass
class DelegationInfo:
    """A time-bounded grant letting ``delegate_id`` act for ``delegator_id``.

    ``request_id`` narrows the grant to a single request (set when an
    approver delegates from inside a decision); otherwise it covers every
    request of ``request_type`` within the window.
    """

    delegator_id: str
    delegate_id: str
    request_type: RequestType
    start_date: datetime
    end_date: datetime
    delegation_id: str = field(default_factory=_new_id)
    reason: str = ""
    status: DelegationStatus = DelegationStatus.PENDING
    approver_ids: Tuple[str, ...] = ()
    approved_by: Optional[str] = None
    request_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def in_window(self, at: datetime) -> bool:
        return self.start_date <= at <= self.end_date

    def is_usable(self, at: datetime) -> bool:
        return (
            self.status in (DelegationStatus.APPROVED, DelegationStatus.ACTIVE)
            and self.in_window(at)
        )


@dataclass
class DecisionRecord:
    """Audit entry for one action applied to a request."""

    request_id: str
    step_index: int
    actor_id: str
    action: str
    record_id: str = field(default_factory=_new_id)
    comment: str = ""
    on_behalf_of: Optional[str] = None
    system: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class ApprovalRequest:
    """An instance of a typed action moving through a workflow."""

    request_type: RequestType
    requester_id: str
    workflow_id: str
    workflow_version: int
    total_steps: int
    request_id: str = field(default_factory=_new_id)
    title: str = ""
    requester_role: Optional[str] = None
    requester_group: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    request_data: Dict[str, Any] = field(default_factory=dict)
    status: RequestStatus = RequestStatus.PENDING
    current_step: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    submitted_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    step_started_at: Optional[datetime] = None
    step_actors: FrozenSet[str] = frozenset()
    escalation_count: int = 0
    escalated_actors: Optional[FrozenSet[str]] = None
    delegation_info: Optional[DelegationInfo] = None
    is_delegated: bool = False
    resolution_error: Optional[str] = None
    status_reason: Optional[str] = None
    rejected_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    history: List[DecisionRecord] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def base_actors(self) -> FrozenSet[str]:
        """Approvers for the current step before delegation substitution."""
        if self.escalated_actors is not None:
            return self.escalated_actors
        return self.step_actors

    def step_decisions(self, step_index: Optional[int] = None) -> List[DecisionRecord]:
        index = self.current_step if step_index is None else step_index
        return [r for r in self.history if r.step_index == index]

    def approvers_of_step(self, step_index: Optional[int] = None) -> FrozenSet[str]:
        return frozenset(
            r.actor_id for r in self.step_decisions(step_index)
            if r.action == StepAction.APPROVE.value
        )
