"""Approval Workflow & Delegation Engine."""

from .config import (
    RequestType,
    RequestStatus,
    Priority,
    ApproverType,
    StepAction,
    ConditionOperator,
    LogicalOperator,
    EscalationTrigger,
    EscalationType,
    DelegationStatus,
    DelegationApprovalType,
    TimerAction,
    EventType,
    SYSTEM_ACTOR,
    ESCALATION_EXHAUSTED_REASON,
    DUE_DATE_ELAPSED_REASON,
    DelegationSettings,
    AutoApprovalSettings,
    EscalationSettings,
    EngineConfig,
)
from .errors import (
    ErrorCode,
    ApprovalEngineError,
    ResolutionError,
    NoManagerFound,
    NotEligible,
    ActionNotAllowed,
    AlreadyTerminal,
    DelegationInactive,
    EscalationExhausted,
    WorkflowValidationError,
    DelegationError,
    RequestNotFound,
    WorkflowNotFound,
    DelegationNotFound,
)
from .models import (
    ApproverSpec,
    Condition,
    ApprovalStep,
    EscalationRule,
    ApprovalWorkflow,
    DelegationInfo,
    DecisionRecord,
    ApprovalRequest,
)
from .org import (
    Account,
    OrgGroup,
    OrgDirectory,
)
from .conditions import ConditionEvaluator
from .definitions import (
    WorkflowDefinitionStore,
    validate_workflow,
    default_workflows,
)
from .delegation import DelegationRegistry
from .resolver import (
    ApproverResolver,
    Resolution,
)
from .timers import (
    TimerDecision,
    evaluate_timers,
    next_deadline,
)
from .events import (
    EngineEvent,
    EventPublisher,
)
from .store import (
    RequestRepository,
    InMemoryRequestRepository,
    DeadlineIndex,
)
from .engine import WorkflowEngine
from .dispatch import DecisionDispatcher
from .escalation import EscalationScheduler
from .stats import (
    ApprovalStats,
    compute_stats,
)
from .persistence import SqlRequestRepository

__all__ = [
    # Config
    "RequestType",
    "RequestStatus",
    "Priority",
    "ApproverType",
    "StepAction",
    "ConditionOperator",
    "LogicalOperator",
    "EscalationTrigger",
    "EscalationType",
    "DelegationStatus",
    "DelegationApprovalType",
    "TimerAction",
    "EventType",
    "SYSTEM_ACTOR",
    "ESCALATION_EXHAUSTED_REASON",
    "DUE_DATE_ELAPSED_REASON",
    "DelegationSettings",
    "AutoApprovalSettings",
    "EscalationSettings",
    "EngineConfig",
    # Errors
    "ErrorCode",
    "ApprovalEngineError",
    "ResolutionError",
    "NoManagerFound",
    "NotEligible",
    "ActionNotAllowed",
    "AlreadyTerminal",
    "DelegationInactive",
    "EscalationExhausted",
    "WorkflowValidationError",
    "DelegationError",
    "RequestNotFound",
    "WorkflowNotFound",
    "DelegationNotFound",
    # Models
    "ApproverSpec",
    "Condition",
    "ApprovalStep",
    "EscalationRule",
    "ApprovalWorkflow",
    "DelegationInfo",
    "DecisionRecord",
    "ApprovalRequest",
    # Organisation
    "Account",
    "OrgGroup",
    "OrgDirectory",
    # Services
    "ConditionEvaluator",
    "WorkflowDefinitionStore",
    "validate_workflow",
    "default_workflows",
    "DelegationRegistry",
    "ApproverResolver",
    "Resolution",
    # Timers
    "TimerDecision",
    "evaluate_timers",
    "next_deadline",
    # Events
    "EngineEvent",
    "EventPublisher",
    # Storage
    "RequestRepository",
    "InMemoryRequestRepository",
    "DeadlineIndex",
    "SqlRequestRepository",
    # Engine
    "WorkflowEngine",
    "DecisionDispatcher",
    "EscalationScheduler",
    # Stats
    "ApprovalStats",
    "compute_stats",
]
