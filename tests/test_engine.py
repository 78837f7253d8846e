"""Tests for the workflow engine state machine."""

import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from src.approval_engine import (
    DUE_DATE_ELAPSED_REASON,
    ESCALATION_EXHAUSTED_REASON,
    SYSTEM_ACTOR,
    Account,
    ActionNotAllowed,
    AlreadyTerminal,
    ApprovalEngineError,
    ApprovalStep,
    ApprovalWorkflow,
    ApproverSpec,
    ApproverType,
    AutoApprovalSettings,
    Condition,
    ConditionOperator,
    DelegationSettings,
    EngineConfig,
    ErrorCode,
    EscalationRule,
    EscalationTrigger,
    EscalationType,
    EventType,
    NotEligible,
    RequestStatus,
    RequestType,
    StepAction,
    WorkflowNotFound,
)

CUSTOM = RequestType.CUSTOM_REQUEST
LEAVE = RequestType.LEAVE_REQUEST


def step(spec, step_id, **kwargs):
    return ApprovalStep(approver=spec, step_id=step_id, name=step_id, **kwargs)


def workflow(workflow_id="wf", steps=(), request_type=CUSTOM, **kwargs):
    return ApprovalWorkflow(
        workflow_id=workflow_id,
        name=workflow_id,
        request_type=request_type,
        steps=tuple(steps),
        **kwargs,
    )


def two_step():
    """Bob approves first, then the platform lead."""
    return workflow(steps=[
        step(ApproverSpec.specific("bob"), "first"),
        step(ApproverSpec.specific("plat_lead"), "second"),
    ])


def leave_workflow(steps=None, **kwargs):
    kwargs.setdefault("allow_delegation", True)
    return workflow(
        "leave",
        steps or [step(ApproverSpec.of(ApproverType.MANAGER), "manager")],
        request_type=LEAVE,
        **kwargs,
    )


class EventLog:
    def __init__(self, engine):
        self.events = []
        engine.publisher.subscribe("*", self.events.append)

    def types(self, request_id=None):
        return [e.event_type for e in self.events if request_id in (None, e.request_id)]


# ── Submission ───────────────────────────────────────────────────────


class TestSubmission:
    def test_submit_resolves_first_step(self, make_engine):
        engine = make_engine([two_step()])
        log = EventLog(engine)
        request = engine.submit(CUSTOM, "alice", {"reason": "offsite"})

        assert request.status == RequestStatus.PENDING
        assert request.current_step == 0
        assert request.total_steps == 2
        assert request.step_actors == {"bob"}
        assert request.requester_group == "platform"
        assert [r.action for r in request.history] == ["submit"]
        assert log.types() == [EventType.REQUEST_SUBMITTED]
        fetched = engine.get(request.request_id)
        assert fetched == request and fetched is not request

    def test_unknown_type(self, make_engine):
        engine = make_engine([two_step()])
        with pytest.raises(WorkflowNotFound):
            engine.submit(RequestType.OVERTIME_REQUEST, "alice")

    def test_explicit_workflow_must_match_type(self, make_engine):
        engine = make_engine([two_step()])
        with pytest.raises(ApprovalEngineError) as exc_info:
            engine.submit(LEAVE, "alice", workflow_id="wf")
        assert exc_info.value.error_code == ErrorCode.VALIDATION_ERROR

    def test_inactive_workflow(self, make_engine):
        engine = make_engine([two_step()])
        engine.definitions.deactivate("wf")
        with pytest.raises(WorkflowNotFound):
            engine.submit(CUSTOM, "alice", workflow_id="wf")

    def test_resolution_failure_parks_request(self, make_engine, org):
        engine = make_engine([leave_workflow()])
        log = EventLog(engine)
        request = engine.submit(LEAVE, "root", {"days": 1})

        assert request.status == RequestStatus.PENDING
        assert request.current_step == 0
        assert request.resolution_error
        assert engine.list_parked() == [request]
        failed = [e for e in log.events if e.event_type == EventType.RESOLUTION_FAILED]
        assert len(failed) == 1 and failed[0].admin_only
        assert engine.list_pending_for("ceo") == []

        org.add_account(Account("root", roles=frozenset({"admin"}), manager_id="ceo"))
        engine.retry_resolution(request.request_id)
        assert request.resolution_error is None
        assert request.step_actors == {"ceo"}
        assert engine.list_parked() == []


# ── Decisions ────────────────────────────────────────────────────────


class TestDecisions:
    def test_approve_then_reject_scenario(self, make_engine):
        engine = make_engine([two_step()])
        request = engine.submit(CUSTOM, "alice")

        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        assert request.current_step == 1
        assert request.status == RequestStatus.IN_REVIEW

        engine.decide(request.request_id, "plat_lead", StepAction.REJECT, comment="no budget")
        assert request.status == RequestStatus.REJECTED
        assert request.rejected_by == "plat_lead"
        assert request.status_reason == "no budget"
        assert request.completed_at is not None

    def test_all_approvals_seal_approved(self, make_engine):
        engine = make_engine([two_step()])
        log = EventLog(engine)
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        engine.decide(request.request_id, "plat_lead", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED
        assert request.current_step == request.total_steps
        assert log.types()[-1] == EventType.REQUEST_APPROVED
        assert EventType.STEP_ADVANCED in log.types()

    def test_current_step_never_decreases(self, make_engine):
        engine = make_engine([workflow(steps=[
            step(ApproverSpec.specific("bob"), "a"),
            step(ApproverSpec.specific("plat_lead"), "b", required=False),
            step(ApproverSpec.specific("eng_lead"), "c"),
        ])])
        request = engine.submit(CUSTOM, "alice")
        seen = [request.current_step]
        for actor, action in [
            ("bob", StepAction.REQUEST_INFO),
            ("bob", StepAction.APPROVE),
            ("plat_lead", StepAction.REJECT),
            ("eng_lead", StepAction.APPROVE),
        ]:
            engine.decide(request.request_id, actor, action)
            seen.append(request.current_step)
        assert seen == sorted(seen)
        assert request.status == RequestStatus.APPROVED

    def test_not_eligible_leaves_state_unchanged(self, make_engine):
        engine = make_engine([two_step()])
        request = engine.submit(CUSTOM, "alice")
        before = len(request.history)
        with pytest.raises(NotEligible):
            engine.decide(request.request_id, "plat_lead", StepAction.APPROVE)
        assert request.status == RequestStatus.PENDING
        assert request.current_step == 0
        assert len(request.history) == before

    def test_already_terminal_and_idempotent_retry(self, make_engine):
        engine = make_engine([workflow(steps=[step(ApproverSpec.specific("bob"), "only")])])
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED

        history = len(request.history)
        assert engine.decide(request.request_id, "bob", StepAction.APPROVE) is request
        assert len(request.history) == history
        with pytest.raises(AlreadyTerminal):
            engine.decide(request.request_id, "bob", StepAction.REJECT)

    def test_reject_on_required_step_seals_at_any_step(self, make_engine):
        engine = make_engine([two_step()])
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "bob", StepAction.REJECT)
        assert request.status == RequestStatus.REJECTED
        assert request.current_step == 0
        assert request.rejected_by == "bob"

    def test_optional_step_rejection_advances(self, make_engine):
        engine = make_engine([workflow(steps=[
            step(ApproverSpec.specific("bob"), "optional", required=False),
            step(ApproverSpec.specific("plat_lead"), "final"),
        ])])
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "bob", StepAction.REJECT)
        assert request.status == RequestStatus.IN_REVIEW
        assert request.current_step == 1

    def test_disallowed_action(self, make_engine):
        engine = make_engine([workflow(steps=[
            step(ApproverSpec.specific("bob"), "s", allowed_actions=(StepAction.APPROVE,)),
        ])])
        request = engine.submit(CUSTOM, "alice")
        with pytest.raises(ActionNotAllowed):
            engine.decide(request.request_id, "bob", StepAction.REJECT)

    def test_request_info_keeps_step(self, make_engine):
        engine = make_engine([two_step()])
        log = EventLog(engine)
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "bob", StepAction.REQUEST_INFO, comment="receipts?")
        assert request.current_step == 0
        assert request.status == RequestStatus.IN_REVIEW
        info = [e for e in log.events if e.event_type == EventType.REQUEST_INFO_REQUESTED]
        assert info[0].audience == ("alice",)

    def test_rejection_comment_required(self, make_engine):
        engine = make_engine([two_step()], config=EngineConfig(require_rejection_comment=True))
        request = engine.submit(CUSTOM, "alice")
        with pytest.raises(ApprovalEngineError):
            engine.decide(request.request_id, "bob", StepAction.REJECT, comment="  ")
        engine.decide(request.request_id, "bob", StepAction.REJECT, comment="duplicate")
        assert request.status == RequestStatus.REJECTED

    def test_requester_cannot_approve_own_request(self, make_engine):
        engine = make_engine([workflow(steps=[step(ApproverSpec.specific("alice", "bob"), "s")])])
        request = engine.submit(CUSTOM, "alice")
        with pytest.raises(NotEligible):
            engine.decide(request.request_id, "alice", StepAction.APPROVE)
        assert engine.list_pending_for("alice") == []


class TestUnanimity:
    def setup_method(self):
        self.finance = ApproverSpec.role("finance")

    def test_first_approver_wins_by_default(self, make_engine):
        engine = make_engine([workflow(steps=[step(self.finance, "finance")])])
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "dave", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED

    def test_unanimous_step_waits_for_everyone(self, make_engine):
        engine = make_engine([workflow(steps=[step(self.finance, "finance", unanimous=True)])])
        request = engine.submit(CUSTOM, "alice")

        engine.decide(request.request_id, "dave", StepAction.APPROVE)
        engine.decide(request.request_id, "dave", StepAction.APPROVE)
        assert request.status == RequestStatus.IN_REVIEW
        assert engine.list_pending_for("dave") == []
        assert engine.list_pending_for("fin_lead") == [request]

        engine.decide(request.request_id, "fin_lead", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED
        approvals = [r for r in request.history if r.action == "approve"]
        assert len(approvals) == 2

    def test_unanimous_step_does_not_wait_on_requester(self, make_engine):
        engine = make_engine([workflow(
            steps=[step(ApproverSpec.specific("alice", "bob"), "pair", unanimous=True)],
        )])
        request = engine.submit(CUSTOM, "alice")
        assert engine.list_pending_for("alice") == []

        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED

    def test_unanimous_step_waits_on_requester_who_may_self_approve(self, make_engine):
        engine = make_engine([workflow(
            steps=[step(ApproverSpec.specific("alice", "bob"), "pair", unanimous=True)],
            can_self_approve=True,
        )])
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        assert request.status == RequestStatus.IN_REVIEW
        assert engine.list_pending_for("alice") == [request]

        engine.decide(request.request_id, "alice", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED


# ── Self-approval & auto-approval ────────────────────────────────────


class TestSelfApproval:
    def test_sole_approver_requester_auto_applies(self, make_engine):
        engine = make_engine([workflow(
            steps=[step(ApproverSpec.specific("alice"), "self")], can_self_approve=True,
        )])
        request = engine.submit(CUSTOM, "alice")
        assert request.status == RequestStatus.APPROVED
        record = request.history[-1]
        assert record.actor_id == "alice" and record.system

    def test_requester_in_larger_set_waits(self, make_engine):
        engine = make_engine([workflow(
            steps=[step(ApproverSpec.specific("alice", "bob"), "shared")], can_self_approve=True,
        )])
        request = engine.submit(CUSTOM, "alice")
        assert request.status == RequestStatus.PENDING
        engine.decide(request.request_id, "alice", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED

    def test_without_flag_request_waits(self, make_engine):
        engine = make_engine([workflow(steps=[step(ApproverSpec.specific("alice"), "self")])])
        request = engine.submit(CUSTOM, "alice")
        assert request.status == RequestStatus.PENDING
        with pytest.raises(NotEligible):
            engine.decide(request.request_id, "alice", StepAction.APPROVE)


class TestAutoApproval:
    def test_workflow_conditions_approve_as_system(self, make_engine):
        engine = make_engine([workflow(
            steps=[step(ApproverSpec.specific("bob"), "s")],
            auto_approve_conditions=(Condition("amount", ConditionOperator.LESS_THAN, 100),),
        )])
        small = engine.submit(CUSTOM, "alice", {"amount": 40})
        large = engine.submit(CUSTOM, "alice", {"amount": 400})
        assert small.status == RequestStatus.APPROVED
        assert small.history[-1].actor_id == SYSTEM_ACTOR
        assert large.status == RequestStatus.PENDING

    def test_organisation_policy(self, make_engine):
        config = EngineConfig(auto_approval=AutoApprovalSettings(enabled=True, max_days=3))
        engine = make_engine([leave_workflow()], config=config)
        assert engine.submit(LEAVE, "alice", {"days": 2}).status == RequestStatus.APPROVED
        assert engine.submit(LEAVE, "alice", {"days": 5}).status == RequestStatus.PENDING

    def test_policy_disabled_by_default(self, make_engine):
        engine = make_engine([leave_workflow()])
        assert engine.submit(LEAVE, "alice", {"days": 1}).status == RequestStatus.PENDING

    def test_gated_step_is_skipped_and_audited(self, make_engine):
        engine = make_engine([workflow(steps=[
            step(ApproverSpec.specific("bob"), "manager"),
            step(ApproverSpec.role("finance"), "finance",
                 conditions=(Condition("amount", ConditionOperator.GREATER_THAN, 1000),)),
        ])])
        request = engine.submit(CUSTOM, "alice", {"amount": 50})
        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED
        assert "skip" in [r.action for r in request.history]


# ── Cancellation ─────────────────────────────────────────────────────


class TestCancel:
    def test_requester_cancels(self, make_engine):
        engine = make_engine([two_step()])
        request = engine.submit(CUSTOM, "alice")
        with pytest.raises(NotEligible):
            engine.cancel(request.request_id, "bob")
        engine.cancel(request.request_id, "alice", reason="plans changed")
        assert request.status == RequestStatus.CANCELLED
        assert engine.cancel(request.request_id, "alice") is request
        assert engine.deadlines.deadline_of(request.request_id) is None

    def test_cannot_cancel_sealed(self, make_engine):
        engine = make_engine([two_step()])
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "bob", StepAction.REJECT)
        with pytest.raises(AlreadyTerminal):
            engine.cancel(request.request_id, "alice")


# ── Time-driven transitions ──────────────────────────────────────────


class TestTimers:
    def timed_workflow(self, **kwargs):
        return leave_workflow(
            steps=[step(ApproverSpec.of(ApproverType.MANAGER), "manager", time_limit_hours=24)],
            escalation_rules=(EscalationRule(escalation_type=EscalationType.NEXT_LEVEL),),
            escalation_levels=1,
            **kwargs,
        )

    def test_escalation_then_exhaustion(self, make_engine, clock):
        engine = make_engine([self.timed_workflow()])
        log = EventLog(engine)
        request = engine.submit(LEAVE, "alice", {"days": 2})
        assert engine.deadlines.deadline_of(request.request_id) == clock.now + timedelta(hours=24)

        clock.advance(hours=23)
        engine.process_timers(request.request_id)
        assert request.escalation_count == 0

        clock.advance(hours=1)
        engine.process_timers(request.request_id)
        assert request.escalation_count == 1
        assert request.base_actors == {"plat_lead"}
        assert log.types().count(EventType.REQUEST_ESCALATED) == 1
        with pytest.raises(NotEligible):
            engine.decide(request.request_id, "bob", StepAction.APPROVE)

        clock.advance(hours=24)
        engine.process_timers(request.request_id)
        assert request.status == RequestStatus.EXPIRED
        assert request.status_reason == ESCALATION_EXHAUSTED_REASON
        assert request.escalation_count == 1
        assert log.types().count(EventType.REQUEST_ESCALATED) == 1

    def test_escalated_approver_can_decide(self, make_engine, clock):
        engine = make_engine([self.timed_workflow()])
        request = engine.submit(LEAVE, "alice")
        clock.advance(hours=24)
        engine.process_timers(request.request_id)
        engine.decide(request.request_id, "plat_lead", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED

    @pytest.mark.parametrize("levels", [0, 1, 3])
    def test_escalations_never_exceed_cap(self, make_engine, levels):
        engine = make_engine([workflow(
            steps=[step(ApproverSpec.specific("alice"), "s")],
            escalation_rules=(EscalationRule(
                trigger=EscalationTrigger.MANUAL, escalation_type=EscalationType.ADMIN,
            ),),
            escalation_levels=levels,
        )])
        request = engine.submit(CUSTOM, "carol")
        for _ in range(levels):
            engine.escalate(request.request_id, trigger=EscalationTrigger.MANUAL)
        assert request.escalation_count == levels
        assert not request.is_terminal

        engine.escalate(request.request_id, trigger=EscalationTrigger.MANUAL)
        assert request.escalation_count == levels
        assert request.status == RequestStatus.EXPIRED
        assert request.status_reason == ESCALATION_EXHAUSTED_REASON

    def test_unresolvable_escalation_routes_to_admins(self, make_engine, clock):
        engine = make_engine([workflow(
            steps=[step(ApproverSpec.specific("ceo"), "ceo", time_limit_hours=1)],
            escalation_rules=(EscalationRule(escalation_type=EscalationType.NEXT_LEVEL),),
        )])
        request = engine.submit(CUSTOM, "alice")
        clock.advance(hours=1)
        engine.process_timers(request.request_id)
        assert request.base_actors == {"root"}

    def test_manual_escalation_by_approver(self, make_engine):
        engine = make_engine([self.timed_workflow()])
        request = engine.submit(LEAVE, "alice")
        engine.decide(request.request_id, "bob", StepAction.ESCALATE)
        assert request.escalation_count == 1
        assert request.base_actors == {"plat_lead"}

    def test_auto_approve_after(self, make_engine, clock):
        engine = make_engine([workflow(steps=[
            step(ApproverSpec.specific("bob"), "s", auto_approve_after_hours=8),
        ])])
        request = engine.submit(CUSTOM, "alice")
        clock.advance(hours=8)
        engine.process_timers(request.request_id)
        assert request.status == RequestStatus.APPROVED
        assert request.history[-1].system

    def test_due_date_expiry(self, make_engine, clock):
        engine = make_engine([two_step()])
        due = clock.now + timedelta(hours=2)
        request = engine.submit(CUSTOM, "alice", due_date=due)
        assert engine.deadlines.deadline_of(request.request_id) == due

        clock.advance(hours=3)
        engine.process_timers(request.request_id)
        assert request.status == RequestStatus.EXPIRED
        assert request.status_reason == DUE_DATE_ELAPSED_REASON

    def test_escalate_sealed_request(self, make_engine):
        engine = make_engine([two_step()])
        request = engine.submit(CUSTOM, "alice")
        engine.cancel(request.request_id, "alice")
        with pytest.raises(AlreadyTerminal):
            engine.escalate(request.request_id)
        assert engine.process_timers(request.request_id) is request


# ── Delegation ───────────────────────────────────────────────────────


class TestDelegation:
    def grant(self, engine, clock, days=7):
        info = engine.create_delegation(
            "bob", "carol", LEAVE, clock.now, clock.now + timedelta(days=days), reason="holiday",
        )
        return engine.approve_delegation(info.delegation_id, "eng_lead")

    def test_delegate_replaces_delegator(self, make_engine, clock):
        engine = make_engine([leave_workflow()])
        self.grant(engine, clock)
        request = engine.submit(LEAVE, "alice", {"days": 2})

        assert engine.effective_approvers(request.request_id).actors == {"carol"}
        assert request.is_delegated
        with pytest.raises(NotEligible):
            engine.decide(request.request_id, "bob", StepAction.APPROVE)
        engine.decide(request.request_id, "carol", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED
        assert request.history[-1].on_behalf_of == "bob"

    def test_pending_lists_follow_delegation_window(self, make_engine, clock):
        engine = make_engine([leave_workflow()])
        self.grant(engine, clock, days=7)
        request = engine.submit(LEAVE, "alice")

        assert engine.list_pending_for("carol") == [request]
        assert engine.list_pending_for("bob") == []

        clock.advance(days=7, seconds=1)
        assert engine.list_pending_for("bob") == [request]
        assert engine.list_pending_for("carol") == []

    def test_activation_event(self, make_engine, clock):
        engine = make_engine([leave_workflow()])
        log = EventLog(engine)
        self.grant(engine, clock)
        assert EventType.DELEGATION_ACTIVATED in log.types()

    def test_type_wide_grant_ignored_when_workflow_disallows(self, make_engine, clock):
        engine = make_engine([leave_workflow(allow_delegation=False)])
        self.grant(engine, clock)
        request = engine.submit(LEAVE, "alice")
        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED

    def test_in_request_delegation(self, make_engine):
        engine = make_engine([leave_workflow()])
        request = engine.submit(LEAVE, "alice")
        engine.decide(request.request_id, "bob", StepAction.DELEGATE, delegate_to="plat_lead")

        assert not request.is_terminal
        assert request.current_step == 0
        assert request.is_delegated
        assert request.delegation_info.request_id == request.request_id
        assert engine.list_pending_for("plat_lead") == [request]
        with pytest.raises(NotEligible):
            engine.decide(request.request_id, "bob", StepAction.APPROVE)
        with pytest.raises(ActionNotAllowed):
            engine.decide(request.request_id, "plat_lead", StepAction.DELEGATE, delegate_to="carol")

        engine.decide(request.request_id, "plat_lead", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED

    def test_delegation_guards(self, make_engine):
        engine = make_engine([leave_workflow()])
        request = engine.submit(LEAVE, "alice")
        with pytest.raises(ApprovalEngineError):
            engine.decide(request.request_id, "bob", StepAction.DELEGATE)
        with pytest.raises(ActionNotAllowed):
            engine.decide(request.request_id, "bob", StepAction.DELEGATE, delegate_to="alice")

        blocked = make_engine([leave_workflow(allow_delegation=False)])
        other = blocked.submit(LEAVE, "alice")
        with pytest.raises(ActionNotAllowed):
            blocked.decide(other.request_id, "bob", StepAction.DELEGATE, delegate_to="carol")

    def test_revoked_grant_restores_delegator(self, make_engine, clock):
        engine = make_engine([leave_workflow()])
        grant = self.grant(engine, clock)
        request = engine.submit(LEAVE, "alice")
        engine.revoke_delegation(grant.delegation_id, "bob")
        assert engine.list_pending_for("bob") == [request]
        assert [d.delegation_id for d in engine.list_delegations("carol")] == [grant.delegation_id]

    def test_registry_policy_comes_from_config(self, make_engine, clock):
        config = EngineConfig(delegation=DelegationSettings(require_approval=False))
        engine = make_engine([leave_workflow()], config=config)
        info = engine.create_delegation("bob", "carol", LEAVE, clock.now, clock.now + timedelta(days=1))
        assert info.status.value == "active"


# ── Versioning, events & concurrency ─────────────────────────────────


class TestSnapshotIsolation:
    def test_bound_version_survives_edit(self, make_engine):
        engine = make_engine([two_step()])
        request = engine.submit(CUSTOM, "alice")

        three = replace(two_step(), steps=two_step().steps + (
            step(ApproverSpec.specific("ceo"), "third"),
        ))
        engine.definitions.update(three)

        assert request.total_steps == 2
        assert request.workflow_version == 1
        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        engine.decide(request.request_id, "plat_lead", StepAction.APPROVE)
        assert request.status == RequestStatus.APPROVED

        newer = engine.submit(CUSTOM, "alice")
        assert newer.workflow_version == 2
        assert newer.total_steps == 3

    def test_queries_return_copies(self, make_engine):
        engine = make_engine([two_step()])
        request = engine.submit(CUSTOM, "alice")
        fetched = engine.get(request.request_id)
        pending = engine.list_pending_for("bob")[0]

        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        assert fetched.current_step == 0 and pending.current_step == 0
        assert len(fetched.history) == 1

        fetched.history.clear()
        engine.list_requests()[0].status = RequestStatus.CANCELLED
        assert len(engine.history(request.request_id)) == 2
        assert engine.get(request.request_id).status == RequestStatus.IN_REVIEW


class TestEvents:
    def test_handlers_run_after_lock_release(self, make_engine):
        engine = make_engine([two_step()])

        def cancel_on_submit(event):
            engine.cancel(event.request_id, "alice", reason="changed mind")

        engine.publisher.subscribe(EventType.REQUEST_SUBMITTED, cancel_on_submit)
        request = engine.submit(CUSTOM, "alice")
        assert request.status == RequestStatus.CANCELLED

    def test_failing_handler_does_not_affect_engine(self, make_engine):
        engine = make_engine([two_step()])

        def broken(event):
            raise RuntimeError("mailer down")

        engine.publisher.subscribe("*", broken)
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "bob", StepAction.APPROVE)
        assert request.current_step == 1
        assert engine.publisher.get_statistics()["failed_deliveries"] >= 2

    def test_seal_events_carry_reason(self, make_engine):
        engine = make_engine([two_step()])
        log = EventLog(engine)
        request = engine.submit(CUSTOM, "alice")
        engine.decide(request.request_id, "bob", StepAction.REJECT, comment="too late")
        rejected = [e for e in log.events if e.event_type == EventType.REQUEST_REJECTED][0]
        assert rejected.data["reason"] == "too late"
        assert rejected.data["status"] == "rejected"


class TestConcurrency:
    def test_racing_approvers_advance_once(self, make_engine):
        engine = make_engine([workflow(steps=[
            step(ApproverSpec.role("finance"), "finance"),
            step(ApproverSpec.specific("ceo"), "ceo"),
        ])])
        request = engine.submit(CUSTOM, "alice")
        barrier = threading.Barrier(2)
        errors = []

        def approve(actor):
            barrier.wait()
            try:
                engine.decide(request.request_id, actor, StepAction.APPROVE)
            except NotEligible as exc:
                errors.append(exc)

        threads = [threading.Thread(target=approve, args=(a,)) for a in ("dave", "fin_lead")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert request.current_step == 1
        assert len(request.approvers_of_step(0)) == 1
        assert len(errors) == 1

    def test_independent_requests_in_parallel(self, make_engine):
        engine = make_engine([two_step()])
        requests = [engine.submit(CUSTOM, "alice") for _ in range(20)]

        def approve(request_id):
            engine.decide(request_id, "bob", StepAction.APPROVE)

        threads = [threading.Thread(target=approve, args=(r.request_id,)) for r in requests]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert all(r.current_step == 1 for r in requests)
