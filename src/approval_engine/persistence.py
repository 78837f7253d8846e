"""SQLAlchemy-backed request repository."""

import json
import logging
from typing import Callable, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.db.models import ApprovalDecisionRecord, ApprovalRequestRecord

from .config import TERMINAL_STATUSES, RequestStatus
from .errors import RequestNotFound
from .models import ApprovalRequest
from .serialization import request_from_dict, request_to_dict

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


class SqlRequestRepository:
    """Stores requests as JSON snapshots plus an append-only decision table.

    Callers hold the per-request lock, so writes for one request never race.
    Requests already sealed in the database are never rewritten.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def add(self, request: ApprovalRequest) -> None:
        with self._session_factory() as session:
            row = ApprovalRequestRecord(request_id=request.request_id)
            self._apply(row, request)
            session.add(row)
            self._append_decisions(session, request, known=set())
            session.commit()

    def get(self, request_id: str) -> ApprovalRequest:
        with self._session_factory() as session:
            row = session.get(ApprovalRequestRecord, request_id)
            if row is None:
                raise RequestNotFound(request_id)
            return request_from_dict(json.loads(row.snapshot))

    def save(self, request: ApprovalRequest) -> None:
        with self._session_factory() as session:
            row = session.get(ApprovalRequestRecord, request.request_id)
            if row is None:
                row = ApprovalRequestRecord(request_id=request.request_id)
                session.add(row)
            elif RequestStatus(row.status).is_terminal:
                logger.debug("Request %s already sealed; not rewriting", request.request_id)
                return
            self._apply(row, request)
            known = set(session.scalars(
                select(ApprovalDecisionRecord.record_id).where(
                    ApprovalDecisionRecord.request_id == request.request_id
                )
            ))
            self._append_decisions(session, request, known)
            session.commit()

    def list_active(self) -> List[ApprovalRequest]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(ApprovalRequestRecord)
                .where(ApprovalRequestRecord.status.notin_(_TERMINAL_VALUES))
                .order_by(ApprovalRequestRecord.submitted_at)
            ).all()
            return [request_from_dict(json.loads(r.snapshot)) for r in rows]

    def list_all(self) -> List[ApprovalRequest]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(ApprovalRequestRecord).order_by(ApprovalRequestRecord.submitted_at)
            ).all()
            return [request_from_dict(json.loads(r.snapshot)) for r in rows]

    @staticmethod
    def _apply(row: ApprovalRequestRecord, request: ApprovalRequest) -> None:
        row.request_type = request.request_type.value
        row.requester_id = request.requester_id
        row.workflow_id = request.workflow_id
        row.workflow_version = request.workflow_version
        row.status = request.status.value
        row.current_step = request.current_step
        row.total_steps = request.total_steps
        row.priority = request.priority.value
        row.submitted_at = request.submitted_at
        row.due_date = request.due_date
        row.completed_at = request.completed_at
        row.resolution_error = request.resolution_error
        row.snapshot = json.dumps(request_to_dict(request), default=str)

    @staticmethod
    def _append_decisions(session: Session, request: ApprovalRequest, known: set) -> None:
        for record in request.history:
            if record.record_id in known:
                continue
            session.add(ApprovalDecisionRecord(
                record_id=record.record_id,
                request_id=request.request_id,
                step_index=record.step_index,
                actor_id=record.actor_id,
                action=record.action,
                comment=record.comment,
                on_behalf_of=record.on_behalf_of,
                system=record.system,
                created_at=record.created_at,
            ))
