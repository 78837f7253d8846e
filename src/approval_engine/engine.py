"""Workflow Engine.

Drives approval requests through their bound workflow version. Every
mutation of one request runs inside ``_transaction``: it holds that
request's lock, persists the record, re-indexes its next deadline and only
then, after the lock is released, publishes the events it collected.
Different requests never share a lock.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Tuple

from .conditions import ConditionEvaluator, lookup_field
from .config import (
    ESCALATION_EXHAUSTED_REASON,
    SYSTEM_ACTOR,
    DelegationStatus,
    EngineConfig,
    EscalationTrigger,
    EventType,
    Priority,
    RequestStatus,
    RequestType,
    StepAction,
    TimerAction,
)
from .definitions import WorkflowDefinitionStore
from .delegation import DelegationRegistry
from .errors import (
    ActionNotAllowed,
    AlreadyTerminal,
    ApprovalEngineError,
    ErrorCode,
    NotEligible,
    ResolutionError,
    WorkflowNotFound,
)
from .events import ADMIN_AUDIENCE, EngineEvent, EventPublisher
from .locks import KeyedLock
from .models import (
    ApprovalRequest,
    ApprovalStep,
    ApprovalWorkflow,
    DecisionRecord,
    DelegationInfo,
    EscalationRule,
)
from .org import OrgDirectory
from .resolver import ApproverResolver, Resolution
from .store import DeadlineIndex, InMemoryRequestRepository, RequestRepository
from .timers import escalation_cap, evaluate_timers, next_deadline

logger = logging.getLogger(__name__)

_SEAL_EVENTS = {
    RequestStatus.APPROVED: EventType.REQUEST_APPROVED,
    RequestStatus.REJECTED: EventType.REQUEST_REJECTED,
    RequestStatus.CANCELLED: EventType.REQUEST_CANCELLED,
    RequestStatus.EXPIRED: EventType.REQUEST_EXPIRED,
}

# Audit actions that move a pending request into review when a person takes them
_DECISION_ACTIONS = frozenset(a.value for a in StepAction)

_TIMED_TRIGGERS = (EscalationTrigger.TIME_LIMIT, EscalationTrigger.STEP_TIMEOUT)


class WorkflowEngine:
    """Orchestrates approval requests through immutable workflow versions.

    Example:
        engine = WorkflowEngine(definitions, org, config=EngineConfig())
        request = engine.submit(RequestType.LEAVE_REQUEST, "alice", {"days": 2})
        engine.decide(request.request_id, "bob", StepAction.APPROVE)
    """

    def __init__(
        self,
        definitions: WorkflowDefinitionStore,
        org: OrgDirectory,
        config: Optional[EngineConfig] = None,
        repository: Optional[RequestRepository] = None,
        publisher: Optional[EventPublisher] = None,
        delegations: Optional[DelegationRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.definitions = definitions
        self.org = org
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.repository = repository or InMemoryRequestRepository()
        self.publisher = publisher or EventPublisher()
        self.delegations = delegations or DelegationRegistry(
            org, self.config.delegation, clock=self.clock,
        )
        self.delegations.set_transition_callback(self._on_delegation_transition)
        self.resolver = ApproverResolver(org, self.delegations)
        self.evaluator = ConditionEvaluator()
        self.deadlines = DeadlineIndex()
        self._locks = KeyedLock()
        self._collector = threading.local()

    # ── Submission ───────────────────────────────────────────────────

    def submit(
        self,
        request_type: RequestType,
        requester_id: str,
        request_data: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
        title: str = "",
        priority: Priority = Priority.MEDIUM,
        due_date: Optional[datetime] = None,
        requester_role: Optional[str] = None,
        requester_group: Optional[str] = None,
    ) -> ApprovalRequest:
        """Create a request bound to the current version of its workflow.

        Step 0 is entered immediately; a resolution failure parks the
        request instead of failing the submission.
        """
        request_type = RequestType(request_type)
        if workflow_id is not None:
            workflow = self.definitions.get(workflow_id)
            if not workflow.is_active:
                raise WorkflowNotFound(f"Workflow {workflow_id} is inactive")
            if workflow.request_type != request_type:
                raise ApprovalEngineError(
                    f"Workflow {workflow_id} handles {workflow.request_type.value}, "
                    f"not {request_type.value}",
                    ErrorCode.VALIDATION_ERROR,
                )
        else:
            workflow = self.definitions.for_type(request_type)

        account = self.org.get_account(requester_id)
        if requester_role is None and account is not None and account.roles:
            requester_role = sorted(account.roles)[0]
        if requester_group is None and account is not None:
            requester_group = account.primary_group

        now = self.clock()
        request = ApprovalRequest(
            request_type=request_type,
            requester_id=requester_id,
            workflow_id=workflow.workflow_id,
            workflow_version=workflow.version,
            total_steps=workflow.total_steps,
            title=title,
            requester_role=requester_role,
            requester_group=requester_group,
            priority=Priority(priority),
            request_data=dict(request_data or {}),
            created_at=now,
            submitted_at=now,
            due_date=due_date,
        )
        self.repository.add(request)

        with self._transaction(request.request_id) as (request, events):
            self._record(request, requester_id, "submit", now)
            events.append(self._event(
                EventType.REQUEST_SUBMITTED, request, requester_id,
                audience=(requester_id,),
                workflow_id=workflow.workflow_id,
                workflow_version=workflow.version,
            ))
            self._enter_step(request, workflow, now, events)

        logger.info(
            "Request %s submitted by %s (%s via %s v%d)",
            request.request_id,
            requester_id,
            request_type.value,
            workflow.workflow_id,
            workflow.version,
        )
        return request

    # ── Decisions ────────────────────────────────────────────────────

    def decide(
        self,
        request_id: str,
        actor_id: str,
        action: StepAction,
        comment: Optional[str] = None,
        delegate_to: Optional[str] = None,
    ) -> ApprovalRequest:
        """Apply one actor's decision to the current step."""
        action = StepAction(action)
        with self._transaction(request_id) as (request, events):
            if request.is_terminal:
                if self._is_sealing_duplicate(request, actor_id, action.value):
                    return request
                raise AlreadyTerminal(
                    f"Request {request_id} is already {request.status.value}",
                    request_id=request_id,
                )

            now = self.clock()
            workflow = self._workflow_of(request)
            step = workflow.step(request.current_step)
            if not step.allows(action):
                raise ActionNotAllowed(
                    f"Step {step.name or step.step_id} does not allow {action.value}",
                    request_id=request_id,
                )

            resolution = self._effective_actors(request, workflow, step, now)
            if actor_id not in resolution.actors:
                raise NotEligible(
                    f"{actor_id} is not an approver for the current step of {request_id}",
                    request_id=request_id,
                    actor_id=actor_id,
                )
            on_behalf_of = next(
                (d for d, e in resolution.substitutions.items() if e == actor_id), None,
            )

            if action == StepAction.APPROVE:
                self._apply_approve(request, workflow, step, resolution, actor_id,
                                    on_behalf_of, comment, now, events)
            elif action == StepAction.REJECT:
                self._apply_reject(request, workflow, step, actor_id, on_behalf_of,
                                   comment, now, events)
            elif action == StepAction.DELEGATE:
                self._apply_delegate(request, workflow, step, actor_id, on_behalf_of,
                                     delegate_to, comment, now)
            elif action == StepAction.REQUEST_INFO:
                self._record(request, actor_id, action.value, now, comment=comment,
                             on_behalf_of=on_behalf_of)
                events.append(self._event(
                    EventType.REQUEST_INFO_REQUESTED, request, actor_id,
                    audience=(request.requester_id,), comment=comment or "",
                ))
            elif action == StepAction.ESCALATE:
                self._escalate_locked(request, workflow, EscalationTrigger.MANUAL,
                                      now, events, actor_id=actor_id)
        return request

    def _apply_approve(
        self,
        request: ApprovalRequest,
        workflow: ApprovalWorkflow,
        step: ApprovalStep,
        resolution: Resolution,
        actor_id: str,
        on_behalf_of: Optional[str],
        comment: Optional[str],
        now: datetime,
        events: List[EngineEvent],
    ) -> None:
        if actor_id == request.requester_id and not workflow.can_self_approve:
            raise NotEligible(
                f"{actor_id} cannot approve their own request",
                request_id=request.request_id,
                actor_id=actor_id,
            )
        if step.unanimous and actor_id in request.approvers_of_step():
            return

        self._record(request, actor_id, StepAction.APPROVE.value, now,
                     comment=comment, on_behalf_of=on_behalf_of)
        if step.unanimous:
            required = self._must_approve(request, workflow, resolution)
            outstanding = required - request.approvers_of_step()
            if outstanding:
                logger.debug(
                    "Request %s step %d waiting on %s",
                    request.request_id, request.current_step, sorted(outstanding),
                )
                return
        self._advance(request, workflow, now, events)

    def _apply_reject(
        self,
        request: ApprovalRequest,
        workflow: ApprovalWorkflow,
        step: ApprovalStep,
        actor_id: str,
        on_behalf_of: Optional[str],
        comment: Optional[str],
        now: datetime,
        events: List[EngineEvent],
    ) -> None:
        if self.config.require_rejection_comment and not (comment or "").strip():
            raise ApprovalEngineError(
                "A comment is required when rejecting", ErrorCode.VALIDATION_ERROR,
                request_id=request.request_id,
            )
        self._record(request, actor_id, StepAction.REJECT.value, now,
                     comment=comment, on_behalf_of=on_behalf_of)
        if not step.required:
            logger.info(
                "Optional step %d of %s rejected by %s; continuing",
                request.current_step, request.request_id, actor_id,
            )
            self._advance(request, workflow, now, events)
            return
        request.rejected_by = actor_id
        self._seal(request, RequestStatus.REJECTED, now, events,
                   reason=comment or "rejected", actor_id=actor_id)

    def _apply_delegate(
        self,
        request: ApprovalRequest,
        workflow: ApprovalWorkflow,
        step: ApprovalStep,
        actor_id: str,
        on_behalf_of: Optional[str],
        delegate_to: Optional[str],
        comment: Optional[str],
        now: datetime,
    ) -> None:
        if not delegate_to:
            raise ApprovalEngineError(
                "delegate_to is required to delegate", ErrorCode.VALIDATION_ERROR,
                request_id=request.request_id,
            )
        if not self._delegation_allowed(workflow, step):
            raise ActionNotAllowed(
                f"Step {step.name or step.step_id} cannot be delegated",
                request_id=request.request_id,
            )
        if on_behalf_of is not None:
            raise ActionNotAllowed(
                f"{actor_id} already acts as a delegate and cannot delegate further",
                request_id=request.request_id,
            )
        if delegate_to == request.requester_id:
            raise ActionNotAllowed(
                "A request cannot be delegated to its requester",
                request_id=request.request_id,
            )

        end = now + timedelta(days=self.config.delegation.max_delegation_days)
        if request.due_date is not None and now < request.due_date < end:
            end = request.due_date
        grant = self.delegations.create(
            delegator_id=actor_id,
            delegate_id=delegate_to,
            request_type=request.request_type,
            start_date=now,
            end_date=end,
            reason=comment or "",
            request_id=request.request_id,
        )
        request.delegation_info = grant
        request.is_delegated = True
        self._record(request, actor_id, StepAction.DELEGATE.value, now,
                     comment=f"delegated to {delegate_to}" + (f": {comment}" if comment else ""))

    def cancel(
        self, request_id: str, actor_id: str, reason: Optional[str] = None,
    ) -> ApprovalRequest:
        """Withdraw a request. Only the requester may cancel."""
        with self._transaction(request_id) as (request, events):
            if request.requester_id != actor_id:
                raise NotEligible(
                    f"Only the requester can cancel {request_id}",
                    request_id=request_id,
                    actor_id=actor_id,
                )
            if request.is_terminal:
                if request.status == RequestStatus.CANCELLED:
                    return request
                raise AlreadyTerminal(
                    f"Request {request_id} is already {request.status.value}",
                    request_id=request_id,
                )
            now = self.clock()
            self._record(request, actor_id, "cancel", now, comment=reason)
            self._seal(request, RequestStatus.CANCELLED, now, events,
                       reason=reason or "cancelled", actor_id=actor_id)
        return request

    # ── Time-driven entry points ─────────────────────────────────────

    def escalate(
        self,
        request_id: str,
        trigger: EscalationTrigger = EscalationTrigger.TIME_LIMIT,
        at: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """Re-route the current step to the next escalation level.

        Past the workflow's cap the request is sealed ``expired`` with reason
        ``escalation-exhausted`` instead.
        """
        with self._transaction(request_id) as (request, events):
            if request.is_terminal:
                raise AlreadyTerminal(
                    f"Request {request_id} is already {request.status.value}",
                    request_id=request_id,
                )
            workflow = self._workflow_of(request)
            self._escalate_locked(request, workflow, EscalationTrigger(trigger),
                                  at or self.clock(), events)
        return request

    def process_timers(self, request_id: str, at: Optional[datetime] = None) -> ApprovalRequest:
        """Apply whatever the timer policy says is due at ``at``."""
        now = at or self.clock()
        with self._transaction(request_id) as (request, events):
            if request.is_terminal:
                return request
            workflow = self._workflow_of(request)
            decision = evaluate_timers(request, workflow, now, self.config)
            if decision is None:
                return request

            if decision.action == TimerAction.AUTO_APPROVE:
                self._record(request, SYSTEM_ACTOR, StepAction.APPROVE.value, now,
                             comment="auto-approved after timeout", system=True)
                self._advance(request, workflow, now, events)
            elif decision.action == TimerAction.ESCALATE:
                self._escalate_locked(request, workflow, EscalationTrigger.TIME_LIMIT, now, events)
            elif decision.action == TimerAction.EXPIRE:
                self._record(request, SYSTEM_ACTOR, "expire", now,
                             comment=decision.reason, system=True)
                self._seal(request, RequestStatus.EXPIRED, now, events, reason=decision.reason)
        return request

    def _escalate_locked(
        self,
        request: ApprovalRequest,
        workflow: ApprovalWorkflow,
        trigger: EscalationTrigger,
        now: datetime,
        events: List[EngineEvent],
        actor_id: str = SYSTEM_ACTOR,
    ) -> None:
        cap = escalation_cap(workflow, self.config)
        if request.escalation_count >= cap:
            logger.warning(
                "Request %s exhausted %d escalation level(s); expiring",
                request.request_id, cap,
            )
            self._record(request, actor_id, "escalate", now,
                         comment=ESCALATION_EXHAUSTED_REASON, system=actor_id == SYSTEM_ACTOR)
            self._seal(request, RequestStatus.EXPIRED, now, events,
                       reason=ESCALATION_EXHAUSTED_REASON, actor_id=actor_id)
            return

        rule = self._select_rule(workflow, trigger, request)
        try:
            targets = self.resolver.resolve_escalation(rule, request, request.base_actors)
        except ResolutionError as exc:
            admins = frozenset(a.account_id for a in self.org.admins())
            logger.warning(
                "Escalation of %s could not resolve %s targets (%s); routing to admins",
                request.request_id, rule.escalation_type.value, exc.message,
            )
            targets = admins or request.base_actors

        request.escalation_count += 1
        request.escalated_actors = targets
        request.step_started_at = now
        self._record(request, actor_id, "escalate", now,
                     comment=f"level {request.escalation_count}: {rule.escalation_type.value}",
                     system=actor_id == SYSTEM_ACTOR)

        if not targets:
            self._park(request, "No escalation target available", events)
            return
        request.resolution_error = None

        audience: List[str] = []
        if rule.notify_requester:
            audience.append(request.requester_id)
        if rule.notify_approvers:
            audience.extend(sorted(targets))
        if rule.notify_admins:
            audience.append(ADMIN_AUDIENCE)
        events.append(self._event(
            EventType.REQUEST_ESCALATED, request, actor_id,
            audience=tuple(audience),
            level=request.escalation_count,
            escalation_type=rule.escalation_type.value,
            trigger=trigger.value,
            approvers=sorted(targets),
        ))
        logger.info(
            "Request %s escalated to level %d (%s) -> %s",
            request.request_id, request.escalation_count,
            rule.escalation_type.value, sorted(targets),
        )

    def _select_rule(
        self, workflow: ApprovalWorkflow, trigger: EscalationTrigger, request: ApprovalRequest,
    ) -> EscalationRule:
        for rule in workflow.escalation_rules:
            matches = rule.trigger == trigger or (
                trigger in _TIMED_TRIGGERS and rule.trigger in _TIMED_TRIGGERS
            )
            if matches and self.evaluator.evaluate(rule.conditions, request.request_data):
                return rule
        return EscalationRule(trigger=trigger, escalation_type=self.config.escalation.default_type)

    # ── Administration ───────────────────────────────────────────────

    def retry_resolution(self, request_id: str) -> ApprovalRequest:
        """Re-run step entry for a request parked by a resolution failure."""
        with self._transaction(request_id) as (request, events):
            if request.is_terminal:
                raise AlreadyTerminal(
                    f"Request {request_id} is already {request.status.value}",
                    request_id=request_id,
                )
            if request.resolution_error is None:
                return request
            logger.info("Retrying resolution for parked request %s", request_id)
            self._enter_step(request, self._workflow_of(request), self.clock(), events)
        return request

    def list_parked(self) -> List[ApprovalRequest]:
        parked = map(self._snapshot, self.repository.list_active())
        return [r for r in parked if r.resolution_error and not r.is_terminal]

    def rebuild_deadlines(self) -> int:
        """Re-index every active request, e.g. after loading from a database."""
        count = 0
        for request in self.repository.list_active():
            self._reschedule(request)
            count += 1
        return count

    # ── Queries ──────────────────────────────────────────────────────
    # Queries return copies taken under each request's lock.

    def get(self, request_id: str) -> ApprovalRequest:
        return self._snapshot(self.repository.get(request_id))

    def history(self, request_id: str) -> List[DecisionRecord]:
        return self.get(request_id).history

    def list_requests(
        self,
        requester_id: Optional[str] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[ApprovalRequest]:
        requests = self.repository.list_all()
        if requester_id is not None:
            requests = [r for r in requests if r.requester_id == requester_id]
        requests = [self._snapshot(r) for r in requests]
        if status is not None:
            requests = [r for r in requests if r.status == RequestStatus(status)]
        return sorted(requests, key=lambda r: r.created_at)

    def list_pending_for(self, actor_id: str) -> List[ApprovalRequest]:
        """Requests ``actor_id`` can decide right now.

        Includes requests delegated to the actor and omits the ones the
        actor has delegated away.
        """
        now = self.clock()
        pending = []
        for request in map(self._snapshot, self.repository.list_active()):
            if request.is_terminal or request.resolution_error:
                continue
            if request.current_step >= request.total_steps:
                continue
            workflow = self._workflow_of(request)
            step = workflow.step(request.current_step)
            resolution = self._effective_actors(request, workflow, step, now)
            if actor_id not in resolution.actors:
                continue
            if actor_id == request.requester_id and not workflow.can_self_approve:
                continue
            if step.unanimous and actor_id in request.approvers_of_step():
                continue
            pending.append(request)
        return sorted(pending, key=lambda r: r.created_at)

    def effective_approvers(self, request_id: str) -> Resolution:
        request = self.get(request_id)
        if request.is_terminal:
            return Resolution(actors=frozenset())
        workflow = self._workflow_of(request)
        step = workflow.step(request.current_step)
        return self._effective_actors(request, workflow, step, self.clock())

    # ── Delegation grants ────────────────────────────────────────────

    def create_delegation(
        self,
        delegator_id: str,
        delegate_id: str,
        request_type: RequestType,
        start_date: datetime,
        end_date: datetime,
        reason: str = "",
    ) -> DelegationInfo:
        return self.delegations.create(
            delegator_id, delegate_id, request_type, start_date, end_date, reason=reason,
        )

    def approve_delegation(self, delegation_id: str, approver_id: str) -> DelegationInfo:
        return self.delegations.approve(delegation_id, approver_id)

    def reject_delegation(self, delegation_id: str, approver_id: str) -> DelegationInfo:
        return self.delegations.reject(delegation_id, approver_id)

    def revoke_delegation(self, delegation_id: str, actor_id: str) -> DelegationInfo:
        return self.delegations.revoke(delegation_id, actor_id)

    def list_delegations(
        self, actor_id: str, status: Optional[DelegationStatus] = None,
    ) -> List[DelegationInfo]:
        return self.delegations.list_for(actor_id, status=status)

    def _on_delegation_transition(self, record: DelegationInfo, previous: DelegationStatus) -> None:
        if record.status != DelegationStatus.ACTIVE:
            return
        event = EngineEvent(
            event_type=EventType.DELEGATION_ACTIVATED,
            request_id=record.request_id,
            actor_id=record.delegator_id,
            audience=(record.delegator_id, record.delegate_id),
            data={
                "delegation_id": record.delegation_id,
                "delegate_id": record.delegate_id,
                "request_type": record.request_type.value,
                "end_date": record.end_date.isoformat(),
            },
            timestamp=self.clock(),
        )
        pending = getattr(self._collector, "events", None)
        if pending is not None:
            pending.append(event)
        else:
            self.publisher.publish(event)

    # ── Step entry ───────────────────────────────────────────────────

    def _enter_step(
        self,
        request: ApprovalRequest,
        workflow: ApprovalWorkflow,
        now: datetime,
        events: List[EngineEvent],
    ) -> None:
        """Enter ``request.current_step``, cascading through steps that
        complete without a human (skipped, auto-approved, self-approved)."""
        while not request.is_terminal:
            if request.current_step >= workflow.total_steps:
                self._seal(request, RequestStatus.APPROVED, now, events)
                return

            step = workflow.step(request.current_step)
            request.step_started_at = now
            request.step_actors = frozenset()
            request.escalated_actors = None
            request.resolution_error = None
            request.delegation_info = None
            request.is_delegated = False

            if step.conditions and not self.evaluator.evaluate(step.conditions, request.request_data):
                self._record(request, SYSTEM_ACTOR, "skip", now,
                             comment="step conditions not met", system=True)
                self._next_step(request, workflow, events)
                continue

            if self._auto_approvable(request, workflow):
                self._record(request, SYSTEM_ACTOR, StepAction.APPROVE.value, now,
                             comment="auto-approved", system=True)
                self._next_step(request, workflow, events)
                continue

            try:
                request.step_actors = self.resolver.resolve(step, request)
            except ResolutionError as exc:
                self._park(request, exc.message, events)
                return

            resolution = self._effective_actors(request, workflow, step, now)
            request.is_delegated = resolution.delegated
            if workflow.can_self_approve and resolution.actors == frozenset({request.requester_id}):
                self._record(request, request.requester_id, StepAction.APPROVE.value, now,
                             comment="self-approved", system=True)
                self._next_step(request, workflow, events)
                continue
            return

    def _advance(
        self,
        request: ApprovalRequest,
        workflow: ApprovalWorkflow,
        now: datetime,
        events: List[EngineEvent],
    ) -> None:
        self._next_step(request, workflow, events)
        self._enter_step(request, workflow, now, events)

    def _next_step(
        self, request: ApprovalRequest, workflow: ApprovalWorkflow, events: List[EngineEvent],
    ) -> None:
        request.current_step += 1
        if request.current_step < workflow.total_steps:
            events.append(self._event(
                EventType.STEP_ADVANCED, request, SYSTEM_ACTOR,
                audience=(request.requester_id,),
                step_index=request.current_step,
            ))

    @staticmethod
    def _must_approve(
        request: ApprovalRequest, workflow: ApprovalWorkflow, resolution: Resolution,
    ) -> FrozenSet[str]:
        """Actors whose approval a unanimous step waits on."""
        if workflow.can_self_approve:
            return resolution.actors
        return resolution.actors - {request.requester_id}

    def _auto_approvable(self, request: ApprovalRequest, workflow: ApprovalWorkflow) -> bool:
        if workflow.auto_approve_conditions and self.evaluator.evaluate(
            workflow.auto_approve_conditions, request.request_data,
        ):
            return True

        policy = self.config.auto_approval
        if not policy.enabled or request.request_type not in policy.allowed_types:
            return False
        amount = lookup_field(request.request_data, "amount")
        if isinstance(amount, (int, float)) and amount > policy.max_amount:
            return False
        days = lookup_field(request.request_data, "days")
        if isinstance(days, (int, float)) and days > policy.max_days:
            return False
        return True

    def _park(self, request: ApprovalRequest, message: str, events: List[EngineEvent]) -> None:
        request.resolution_error = message
        logger.warning(
            "Request %s parked at step %d: %s",
            request.request_id, request.current_step, message,
        )
        events.append(self._event(
            EventType.RESOLUTION_FAILED, request, SYSTEM_ACTOR,
            audience=(ADMIN_AUDIENCE,),
            step_index=request.current_step,
            error=message,
        ))

    # ── Helpers ──────────────────────────────────────────────────────

    @contextmanager
    def _transaction(self, request_id: str) -> Iterator[Tuple[ApprovalRequest, List[EngineEvent]]]:
        events: List[EngineEvent] = []
        with self._locks.hold(request_id):
            self._collector.events = events
            try:
                request = self.repository.get(request_id)
                yield request, events
                self.repository.save(request)
                self._reschedule(request)
            finally:
                self._collector.events = None
        self.publisher.publish_all(events)

    def _snapshot(self, request: ApprovalRequest) -> ApprovalRequest:
        with self._locks.hold(request.request_id):
            return copy.deepcopy(request)

    def _reschedule(self, request: ApprovalRequest) -> None:
        if request.is_terminal:
            self.deadlines.discard(request.request_id)
            return
        workflow = self._workflow_of(request)
        self.deadlines.schedule(request.request_id, next_deadline(request, workflow, self.config))

    def _workflow_of(self, request: ApprovalRequest) -> ApprovalWorkflow:
        return self.definitions.get(request.workflow_id, request.workflow_version)

    def _delegation_allowed(self, workflow: ApprovalWorkflow, step: ApprovalStep) -> bool:
        return self.config.delegation.allow_delegation and workflow.allow_delegation and step.delegable

    def _effective_actors(
        self,
        request: ApprovalRequest,
        workflow: ApprovalWorkflow,
        step: ApprovalStep,
        now: datetime,
    ) -> Resolution:
        if not self._delegation_allowed(workflow, step):
            return Resolution(actors=request.base_actors)
        return self.resolver.substitute(request.base_actors, request, now)

    def _record(
        self,
        request: ApprovalRequest,
        actor_id: str,
        action: str,
        now: datetime,
        comment: Optional[str] = None,
        on_behalf_of: Optional[str] = None,
        system: bool = False,
    ) -> DecisionRecord:
        record = DecisionRecord(
            request_id=request.request_id,
            step_index=request.current_step,
            actor_id=actor_id,
            action=action,
            comment=comment or "",
            on_behalf_of=on_behalf_of,
            system=system,
            created_at=now,
        )
        request.history.append(record)
        if not system and action in _DECISION_ACTIONS and request.status == RequestStatus.PENDING:
            request.status = RequestStatus.IN_REVIEW
        return record

    def _seal(
        self,
        request: ApprovalRequest,
        status: RequestStatus,
        now: datetime,
        events: List[EngineEvent],
        reason: Optional[str] = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> None:
        request.status = status
        request.status_reason = reason
        request.completed_at = now
        request.resolution_error = None
        events.append(self._event(
            _SEAL_EVENTS[status], request, actor_id,
            audience=(request.requester_id,),
            reason=reason,
        ))
        logger.info(
            "Request %s sealed %s%s",
            request.request_id, status.value, f" ({reason})" if reason else "",
        )

    def _is_sealing_duplicate(self, request: ApprovalRequest, actor_id: str, action: str) -> bool:
        if not request.history:
            return False
        last = request.history[-1]
        return not last.system and last.actor_id == actor_id and last.action == action

    def _event(
        self,
        event_type: EventType,
        request: ApprovalRequest,
        actor_id: Optional[str],
        audience: Tuple[str, ...] = (),
        **data: Any,
    ) -> EngineEvent:
        payload = {
            "status": request.status.value,
            "current_step": request.current_step,
            "total_steps": request.total_steps,
        }
        payload.update(data)
        return EngineEvent(
            event_type=event_type,
            request_id=request.request_id,
            actor_id=actor_id,
            audience=audience,
            data=payload,
            timestamp=self.clock(),
        )
