"""Approval Workflow & Delegation Engine - Configuration."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Tuple


class RequestType(str, Enum):
    """Kinds of request that can be routed through a workflow."""

    LEAVE_REQUEST = "leave_request"
    SCHEDULE_CHANGE = "schedule_change"
    OVERTIME_REQUEST = "overtime_request"
    ATTENDANCE_CORRECTION = "attendance_correction"
    REPORT_SUBMISSION = "report_submission"
    TASK_COMPLETION = "task_completion"
    EXPENSE_CLAIM = "expense_claim"
    PURCHASE_REQUEST = "purchase_request"
    DELEGATION_REQUEST = "delegation_request"
    CUSTOM_REQUEST = "custom_request"


class RequestStatus(str, Enum):
    """Approval request lifecycle status."""

    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
    RequestStatus.EXPIRED,
})


class Priority(str, Enum):
    """Request priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ApproverType(str, Enum):
    """How a step's approvers are found."""

    SPECIFIC = "specific"
    ROLE = "role"
    GROUP = "group"
    MANAGER = "manager"
    UPPER_MANAGER = "upper_manager"
    GROUP_LEADER = "group_leader"
    UPPER_GROUP_LEADER = "upper_group_leader"
    TOP_GROUP_LEADER = "top_group_leader"
    ADMIN = "admin"
    ANY_LEADER = "any_leader"
    ANY_MANAGER = "any_manager"


class StepAction(str, Enum):
    """Actions an approver may take on a step."""

    APPROVE = "approve"
    REJECT = "reject"
    DELEGATE = "delegate"
    REQUEST_INFO = "request_info"
    ESCALATE = "escalate"


ALL_STEP_ACTIONS: Tuple[StepAction, ...] = tuple(StepAction)


class ConditionOperator(str, Enum):
    """Comparison operators for conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    IN = "in"
    NOT_IN = "not_in"


class LogicalOperator(str, Enum):
    """How a condition joins the result accumulated so far."""

    AND = "and"
    OR = "or"


class EscalationTrigger(str, Enum):
    """What fires an escalation rule."""

    TIME_LIMIT = "time_limit"
    STEP_TIMEOUT = "step_timeout"
    MANUAL = "manual"


class EscalationType(str, Enum):
    """Where an escalated step is routed."""

    NEXT_LEVEL = "next_level"
    SPECIFIC_USER = "specific_user"
    ADMIN = "admin"
    GROUP_LEADER = "group_leader"


class DelegationStatus(str, Enum):
    """Status of a delegation grant."""

    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    REJECTED = "rejected"
    EXPIRED = "expired"
    REVOKED = "revoked"


class DelegationApprovalType(str, Enum):
    """Who approves a delegation grant before it becomes active."""

    DELEGATE_DIRECT = "delegate_direct"
    UPPER_GROUP_LEADER = "upper_group_leader"
    TOP_GROUP_LEADER = "top_group_leader"
    ADMIN = "admin"


class TimerAction(str, Enum):
    """Time-driven outcomes computed by the timer policy."""

    AUTO_APPROVE = "auto_approve"
    ESCALATE = "escalate"
    EXPIRE = "expire"


class EventType(str, Enum):
    """Notification signals emitted by the engine."""

    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    REQUEST_ESCALATED = "request_escalated"
    REQUEST_CANCELLED = "request_cancelled"
    REQUEST_EXPIRED = "request_expired"
    REQUEST_INFO_REQUESTED = "request_info_requested"
    STEP_ADVANCED = "step_advanced"
    RESOLUTION_FAILED = "resolution_failed"
    DELEGATION_ACTIVATED = "delegation_activated"


SYSTEM_ACTOR = "system"
ADMIN_ROLE = "admin"
ESCALATION_EXHAUSTED_REASON = "escalation-exhausted"
DUE_DATE_ELAPSED_REASON = "due-date-elapsed"


@dataclass
class DelegationSettings:
    """Organisation-wide delegation policy."""

    allow_delegation: bool = True
    approval_type: DelegationApprovalType = DelegationApprovalType.UPPER_GROUP_LEADER
    require_approval: bool = True
    auto_approve_for_upper_leaders: bool = False
    allow_multiple_delegations: bool = False
    max_delegation_days: int = 30


@dataclass
class AutoApprovalSettings:
    """Organisation-wide auto-approval policy applied at step entry."""

    enabled: bool = False
    max_amount: float = 1000.0
    max_days: float = 3.0
    allowed_types: Tuple[RequestType, ...] = (
        RequestType.LEAVE_REQUEST,
        RequestType.SCHEDULE_CHANGE,
    )


@dataclass
class EscalationSettings:
    """Escalation defaults for workflows that do not set their own."""

    enabled: bool = True
    default_timeout_hours: float = 24.0
    escalation_levels: int = 3
    default_type: EscalationType = EscalationType.NEXT_LEVEL


@dataclass
class EngineConfig:
    """Configuration threaded into the engine, resolver and registry."""

    delegation: DelegationSettings = field(default_factory=DelegationSettings)
    auto_approval: AutoApprovalSettings = field(default_factory=AutoApprovalSettings)
    escalation: EscalationSettings = field(default_factory=EscalationSettings)
    require_rejection_comment: bool = False
    scheduler_interval_seconds: float = 60.0
    worker_count: int = 4

    @classmethod
    def from_settings(cls, settings: Any) -> "EngineConfig":
        """Build an engine config from a ``src.settings.Settings`` instance."""
        return cls(
            delegation=DelegationSettings(
                allow_delegation=settings.allow_delegation,
                approval_type=DelegationApprovalType(settings.delegation_approval_type),
                require_approval=settings.require_delegation_approval,
                auto_approve_for_upper_leaders=settings.auto_approve_for_upper_leaders,
                allow_multiple_delegations=settings.allow_multiple_delegations,
                max_delegation_days=settings.max_delegation_days,
            ),
            auto_approval=AutoApprovalSettings(
                enabled=settings.auto_approval_enabled,
                max_amount=settings.auto_approval_max_amount,
                max_days=settings.auto_approval_max_days,
                allowed_types=tuple(RequestType(t) for t in settings.auto_approval_types),
            ),
            escalation=EscalationSettings(
                enabled=settings.escalation_enabled,
                default_timeout_hours=settings.escalation_default_timeout_hours,
                escalation_levels=settings.escalation_levels,
            ),
            require_rejection_comment=settings.require_rejection_comment,
            scheduler_interval_seconds=settings.scheduler_interval_seconds,
            worker_count=settings.worker_count,
        )


