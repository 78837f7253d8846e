"""Time-based policy for approval requests.

Pure functions answering "given this state and this instant, what should
happen?". The engine applies the answer; the scheduler only decides when
to ask. Nothing here reads a clock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .config import (
    DUE_DATE_ELAPSED_REASON,
    EngineConfig,
    EscalationTrigger,
    TimerAction,
)
from .models import ApprovalRequest, ApprovalStep, ApprovalWorkflow


@dataclass(frozen=True)
class TimerDecision:
    action: TimerAction
    deadline: datetime
    reason: Optional[str] = None


def escalation_cap(workflow: ApprovalWorkflow, config: EngineConfig) -> int:
    """Maximum escalations per request for ``workflow``."""
    if workflow.escalation_levels is not None:
        return workflow.escalation_levels
    return config.escalation.escalation_levels


def current_step(request: ApprovalRequest, workflow: ApprovalWorkflow) -> Optional[ApprovalStep]:
    if request.is_terminal or request.current_step >= workflow.total_steps:
        return None
    return workflow.step(request.current_step)


def step_time_limit(step: ApprovalStep, workflow: ApprovalWorkflow, config: EngineConfig) -> Optional[float]:
    """Hours before the step escalates, or None if it never does.

    A step without its own limit inherits the organisation default only when
    the workflow declares a timed escalation rule for it.
    """
    if not config.escalation.enabled:
        return None
    if step.time_limit_hours is not None:
        return step.time_limit_hours
    if step.auto_approve_after_hours is not None:
        return None
    timed = (EscalationTrigger.TIME_LIMIT, EscalationTrigger.STEP_TIMEOUT)
    if any(rule.trigger in timed for rule in workflow.escalation_rules):
        return config.escalation.default_timeout_hours
    return None


def _step_deadlines(
    request: ApprovalRequest, workflow: ApprovalWorkflow, config: EngineConfig,
) -> List[Tuple[datetime, TimerAction]]:
    step = current_step(request, workflow)
    if step is None or request.step_started_at is None or request.resolution_error:
        return []

    deadlines: List[Tuple[datetime, TimerAction]] = []
    if step.auto_approve_after_hours is not None:
        deadlines.append((
            request.step_started_at + timedelta(hours=step.auto_approve_after_hours),
            TimerAction.AUTO_APPROVE,
        ))
    limit = step_time_limit(step, workflow, config)
    if limit is not None:
        deadlines.append((
            request.step_started_at + timedelta(hours=limit),
            TimerAction.ESCALATE,
        ))
    return deadlines


def due_date_claimed(
    request: ApprovalRequest, workflow: ApprovalWorkflow, config: EngineConfig,
) -> bool:
    """True while a pending escalation owns the request past its due date."""
    step = current_step(request, workflow)
    if step is None or request.resolution_error:
        return False
    if step_time_limit(step, workflow, config) is None:
        return False
    return request.escalation_count < escalation_cap(workflow, config)


def next_deadline(
    request: ApprovalRequest, workflow: ApprovalWorkflow, config: EngineConfig,
) -> Optional[datetime]:
    """Earliest instant at which ``evaluate_timers`` may return a decision."""
    if request.is_terminal:
        return None
    candidates = [when for when, _ in _step_deadlines(request, workflow, config)]
    if request.due_date is not None and not due_date_claimed(request, workflow, config):
        candidates.append(request.due_date)
    return min(candidates) if candidates else None


def evaluate_timers(
    request: ApprovalRequest,
    workflow: ApprovalWorkflow,
    now: datetime,
    config: EngineConfig,
) -> Optional[TimerDecision]:
    """The time-driven transition due at ``now``, if any.

    When several deadlines have passed the earliest one wins.
    """
    if request.is_terminal:
        return None

    elapsed = [
        TimerDecision(action=action, deadline=when)
        for when, action in _step_deadlines(request, workflow, config)
        if when <= now
    ]
    if (
        request.due_date is not None
        and request.due_date <= now
        and not due_date_claimed(request, workflow, config)
    ):
        elapsed.append(TimerDecision(
            action=TimerAction.EXPIRE,
            deadline=request.due_date,
            reason=DUE_DATE_ELAPSED_REASON,
        ))

    if not elapsed:
        return None
    return min(elapsed, key=lambda d: d.deadline)
