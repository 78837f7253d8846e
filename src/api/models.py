"""Request and response models for the approvals API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.approval_engine import Priority, RequestType, StepAction


class SubmitRequest(BaseModel):
    request_type: RequestType
    requester_id: str
    request_data: dict[str, Any] = Field(default_factory=dict)
    workflow_id: Optional[str] = None
    title: str = ""
    priority: Priority = Priority.MEDIUM
    due_date: Optional[datetime] = None


class DecisionRequest(BaseModel):
    actor_id: str
    action: StepAction
    comment: Optional[str] = None
    delegate_to: Optional[str] = None


class CancelRequest(BaseModel):
    actor_id: str
    reason: Optional[str] = None


class DelegationCreateRequest(BaseModel):
    delegator_id: str
    delegate_id: str
    request_type: RequestType
    start_date: datetime
    end_date: datetime
    reason: str = ""


class DelegationActionRequest(BaseModel):
    actor_id: str


class AccountPayload(BaseModel):
    account_id: str
    name: str = ""
    roles: list[str] = Field(default_factory=list)
    group_ids: list[str] = Field(default_factory=list)
    manager_id: Optional[str] = None
    active: bool = True


class GroupPayload(BaseModel):
    group_id: str
    name: str = ""
    leader_id: Optional[str] = None
    parent_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    components: dict[str, str] = Field(default_factory=dict)
