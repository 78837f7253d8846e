"""Approvals API: requests, decisions, delegations and workflow catalogue.

Handlers are plain ``def`` so FastAPI runs the blocking engine calls on
its threadpool. Requester-facing payloads never include resolution error
text; administrators read it from ``/approvals/parked``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from src.api.dependencies import get_actor_id, get_engine, require_admin
from src.api.models import (
    AccountPayload,
    CancelRequest,
    DecisionRequest,
    DelegationActionRequest,
    DelegationCreateRequest,
    GroupPayload,
    SubmitRequest,
)
from src.approval_engine import (
    Account,
    EscalationTrigger,
    OrgGroup,
    RequestStatus,
    WorkflowEngine,
    compute_stats,
)
from src.approval_engine.serialization import (
    decision_to_dict,
    delegation_to_dict,
    request_to_dict,
    workflow_from_dict,
    workflow_to_dict,
)
from src.logging_config.context import RequestContext

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/approvals", tags=["Approvals"])


def _public(request) -> dict[str, Any]:
    return request_to_dict(request, include_internal=False)


# ── Requests ─────────────────────────────────────────────────────────


@router.post("/requests", status_code=201)
def submit_request(body: SubmitRequest, engine: WorkflowEngine = Depends(get_engine)):
    with RequestContext(actor_id=body.requester_id):
        request = engine.submit(
            request_type=body.request_type,
            requester_id=body.requester_id,
            request_data=body.request_data,
            workflow_id=body.workflow_id,
            title=body.title,
            priority=body.priority,
            due_date=body.due_date,
        )
    return _public(request)


@router.get("/requests")
def list_requests(
    requester_id: Optional[str] = Query(default=None),
    status: Optional[RequestStatus] = Query(default=None),
    engine: WorkflowEngine = Depends(get_engine),
):
    return [_public(r) for r in engine.list_requests(requester_id=requester_id, status=status)]


@router.get("/requests/{request_id}")
def get_request(request_id: str, engine: WorkflowEngine = Depends(get_engine)):
    return _public(engine.get(request_id))


@router.get("/requests/{request_id}/history")
def get_history(request_id: str, engine: WorkflowEngine = Depends(get_engine)):
    return [decision_to_dict(r) for r in engine.history(request_id)]


@router.post("/requests/{request_id}/decisions")
def decide(request_id: str, body: DecisionRequest, engine: WorkflowEngine = Depends(get_engine)):
    with RequestContext(actor_id=body.actor_id, approval_request_id=request_id):
        request = engine.decide(
            request_id,
            body.actor_id,
            body.action,
            comment=body.comment,
            delegate_to=body.delegate_to,
        )
    return _public(request)


@router.post("/requests/{request_id}/cancel")
def cancel(request_id: str, body: CancelRequest, engine: WorkflowEngine = Depends(get_engine)):
    with RequestContext(actor_id=body.actor_id, approval_request_id=request_id):
        request = engine.cancel(request_id, body.actor_id, reason=body.reason)
    return _public(request)


@router.get("/pending/{actor_id}")
def pending_for(actor_id: str, engine: WorkflowEngine = Depends(get_engine)):
    return [_public(r) for r in engine.list_pending_for(actor_id)]


@router.get("/stats")
def stats(engine: WorkflowEngine = Depends(get_engine)):
    return compute_stats(engine.list_requests()).to_dict()


# ── Administration ───────────────────────────────────────────────────


@router.get("/parked")
def list_parked(
    admin_id: str = Depends(require_admin), engine: WorkflowEngine = Depends(get_engine),
):
    return [request_to_dict(r) for r in engine.list_parked()]


@router.post("/requests/{request_id}/retry")
def retry_resolution(
    request_id: str,
    admin_id: str = Depends(require_admin),
    engine: WorkflowEngine = Depends(get_engine),
):
    with RequestContext(actor_id=admin_id, approval_request_id=request_id):
        return request_to_dict(engine.retry_resolution(request_id))


@router.post("/requests/{request_id}/escalate")
def escalate(
    request_id: str,
    admin_id: str = Depends(require_admin),
    engine: WorkflowEngine = Depends(get_engine),
):
    with RequestContext(actor_id=admin_id, approval_request_id=request_id):
        return request_to_dict(engine.escalate(request_id, trigger=EscalationTrigger.MANUAL))


# ── Delegations ──────────────────────────────────────────────────────


@router.post("/delegations", status_code=201)
def create_delegation(body: DelegationCreateRequest, engine: WorkflowEngine = Depends(get_engine)):
    with RequestContext(actor_id=body.delegator_id):
        info = engine.create_delegation(
            body.delegator_id,
            body.delegate_id,
            body.request_type,
            body.start_date,
            body.end_date,
            reason=body.reason,
        )
    return delegation_to_dict(info)


@router.get("/delegations")
def list_delegations(actor_id: str = Query(...), engine: WorkflowEngine = Depends(get_engine)):
    return [delegation_to_dict(d) for d in engine.list_delegations(actor_id)]


@router.post("/delegations/{delegation_id}/approve")
def approve_delegation(
    delegation_id: str, body: DelegationActionRequest, engine: WorkflowEngine = Depends(get_engine),
):
    return delegation_to_dict(engine.approve_delegation(delegation_id, body.actor_id))


@router.post("/delegations/{delegation_id}/reject")
def reject_delegation(
    delegation_id: str, body: DelegationActionRequest, engine: WorkflowEngine = Depends(get_engine),
):
    return delegation_to_dict(engine.reject_delegation(delegation_id, body.actor_id))


@router.post("/delegations/{delegation_id}/revoke")
def revoke_delegation(
    delegation_id: str, body: DelegationActionRequest, engine: WorkflowEngine = Depends(get_engine),
):
    return delegation_to_dict(engine.revoke_delegation(delegation_id, body.actor_id))


# ── Workflows ────────────────────────────────────────────────────────


@router.get("/workflows")
def list_workflows(
    include_inactive: bool = Query(default=False), engine: WorkflowEngine = Depends(get_engine),
):
    return [
        workflow_to_dict(w)
        for w in engine.definitions.list_workflows(include_inactive=include_inactive)
    ]


@router.get("/workflows/{workflow_id}")
def get_workflow(
    workflow_id: str,
    version: Optional[int] = Query(default=None),
    engine: WorkflowEngine = Depends(get_engine),
):
    return workflow_to_dict(engine.definitions.get(workflow_id, version))


@router.post("/workflows", status_code=201)
def register_workflow(
    payload: dict[str, Any] = Body(...),
    admin_id: str = Depends(require_admin),
    engine: WorkflowEngine = Depends(get_engine),
):
    try:
        workflow = workflow_from_dict(payload)
    except (KeyError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=f"Malformed workflow definition: {exc}")
    if workflow.workflow_id in {w.workflow_id for w in engine.definitions.list_workflows(True)}:
        stored = engine.definitions.update(workflow)
    else:
        stored = engine.definitions.register(workflow)
    logger.info("Workflow %s v%d stored by %s", stored.workflow_id, stored.version, admin_id)
    return workflow_to_dict(stored)


# ── Organisation ─────────────────────────────────────────────────────


def _org_admin(engine: WorkflowEngine, actor_id: Optional[str]) -> None:
    admins = {a.account_id for a in engine.org.admins()}
    # An empty directory can be bootstrapped without credentials
    if admins and actor_id not in admins:
        raise HTTPException(status_code=403, detail="Administrator access required")


@router.post("/org/accounts", status_code=201)
def add_account(
    body: AccountPayload,
    engine: WorkflowEngine = Depends(get_engine),
    x_actor_id: Optional[str] = Depends(get_actor_id),
):
    _org_admin(engine, x_actor_id)
    account = engine.org.add_account(Account(
        account_id=body.account_id,
        name=body.name,
        roles=frozenset(body.roles),
        group_ids=tuple(body.group_ids),
        manager_id=body.manager_id,
        active=body.active,
    ))
    return {"account_id": account.account_id, "active": account.active}


@router.post("/org/groups", status_code=201)
def add_group(
    body: GroupPayload,
    engine: WorkflowEngine = Depends(get_engine),
    x_actor_id: Optional[str] = Depends(get_actor_id),
):
    _org_admin(engine, x_actor_id)
    group = engine.org.add_group(OrgGroup(
        group_id=body.group_id,
        name=body.name,
        leader_id=body.leader_id,
        parent_id=body.parent_id,
    ))
    return {"group_id": group.group_id}
