"""Approval engine exception hierarchy.

Every failure is local to one request. Each exception carries an
``ErrorCode`` that the HTTP layer maps to a status code, so a single
handler can translate the whole hierarchy.
"""

from enum import Enum
from typing import Dict, List, Optional


class ErrorCode(Enum):
    """Standardized error codes for engine failures."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    WORKFLOW_INVALID = "WORKFLOW_INVALID"
    DELEGATION_INVALID = "DELEGATION_INVALID"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    ACTION_NOT_ALLOWED = "ACTION_NOT_ALLOWED"
    REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    DELEGATION_NOT_FOUND = "DELEGATION_NOT_FOUND"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    DELEGATION_INACTIVE = "DELEGATION_INACTIVE"
    RESOLUTION_FAILED = "RESOLUTION_FAILED"
    NO_MANAGER_FOUND = "NO_MANAGER_FOUND"
    ESCALATION_EXHAUSTED = "ESCALATION_EXHAUSTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.WORKFLOW_INVALID: 400,
    ErrorCode.DELEGATION_INVALID: 400,
    ErrorCode.NOT_ELIGIBLE: 403,
    ErrorCode.ACTION_NOT_ALLOWED: 403,
    ErrorCode.REQUEST_NOT_FOUND: 404,
    ErrorCode.WORKFLOW_NOT_FOUND: 404,
    ErrorCode.DELEGATION_NOT_FOUND: 404,
    ErrorCode.ALREADY_TERMINAL: 409,
    ErrorCode.DELEGATION_INACTIVE: 409,
    ErrorCode.RESOLUTION_FAILED: 409,
    ErrorCode.NO_MANAGER_FOUND: 409,
    ErrorCode.ESCALATION_EXHAUSTED: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


class ApprovalEngineError(Exception):
    """Base exception for all approval engine errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = ERROR_STATUS_MAP.get(error_code, 500)
        self.request_id = request_id


class ResolutionError(ApprovalEngineError):
    """No eligible approver could be found for a step.

    A configuration defect: the request stays pending and the message is
    shown to administrators only.
    """

    def __init__(
        self,
        message: str = "No eligible approver found",
        error_code: ErrorCode = ErrorCode.RESOLUTION_FAILED,
        request_id: Optional[str] = None,
    ):
        super().__init__(message, error_code, request_id)


class NoManagerFound(ResolutionError):
    """The requester's manager chain ends before the required depth."""

    def __init__(self, message: str = "Manager chain too short", request_id: Optional[str] = None):
        super().__init__(message, ErrorCode.NO_MANAGER_FOUND, request_id)


class NotEligible(ApprovalEngineError):
    """The actor is not in the resolved set for the current step."""

    def __init__(
        self,
        message: str = "Actor is not eligible to decide this step",
        error_code: ErrorCode = ErrorCode.NOT_ELIGIBLE,
        request_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ):
        super().__init__(message, error_code, request_id)
        self.actor_id = actor_id


class ActionNotAllowed(NotEligible):
    """The step does not permit the attempted action."""

    def __init__(self, message: str = "Action not allowed on this step", request_id: Optional[str] = None):
        super().__init__(message, ErrorCode.ACTION_NOT_ALLOWED, request_id)


class AlreadyTerminal(ApprovalEngineError):
    """The request has been sealed and accepts no further decisions."""

    def __init__(self, message: str = "Request is already sealed", request_id: Optional[str] = None):
        super().__init__(message, ErrorCode.ALREADY_TERMINAL, request_id)


class DelegationInactive(ApprovalEngineError):
    """A delegation was used outside its approved validity window."""

    def __init__(self, message: str = "Delegation is not active", delegation_id: Optional[str] = None):
        super().__init__(message, ErrorCode.DELEGATION_INACTIVE)
        self.delegation_id = delegation_id


class EscalationExhausted(ApprovalEngineError):
    """The workflow's escalation cap has been reached."""

    def __init__(self, message: str = "Escalation levels exhausted", request_id: Optional[str] = None):
        super().__init__(message, ErrorCode.ESCALATION_EXHAUSTED, request_id)


class WorkflowValidationError(ApprovalEngineError):
    """A workflow definition failed definition-time validation."""

    def __init__(self, message: str = "Invalid workflow definition", errors: Optional[List[str]] = None):
        errors = errors or []
        if errors:
            message = f"{message}: {'; '.join(errors)}"
        super().__init__(message, ErrorCode.WORKFLOW_INVALID)
        self.errors = errors


class DelegationError(ApprovalEngineError):
    """A delegation grant was rejected by policy or validation."""

    def __init__(self, message: str = "Invalid delegation"):
        super().__init__(message, ErrorCode.DELEGATION_INVALID)


class RequestNotFound(ApprovalEngineError):
    """No request exists with the given id."""

    def __init__(self, request_id: str):
        super().__init__(f"Unknown request: {request_id}", ErrorCode.REQUEST_NOT_FOUND, request_id)


class WorkflowNotFound(ApprovalEngineError):
    """No workflow (or version) exists for the given lookup."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.WORKFLOW_NOT_FOUND)


class DelegationNotFound(ApprovalEngineError):
    """No delegation exists with the given id."""

    def __init__(self, delegation_id: str):
        super().__init__(f"Unknown delegation: {delegation_id}", ErrorCode.DELEGATION_NOT_FOUND)
        self.delegation_id = delegation_id
