"""SQLAlchemy ORM models for the approval engine.

Tables:
- approval_requests: One row per request with a JSON snapshot of its state
- approval_decisions: Append-only audit trail of every recorded action
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from src.db.base import Base


class ApprovalRequestRecord(Base):
    """Persisted approval request. ``snapshot`` holds the full serialized record."""

    __tablename__ = "approval_requests"

    request_id = Column(String(32), primary_key=True)
    request_type = Column(String(40), nullable=False, index=True)
    requester_id = Column(String(128), nullable=False, index=True)
    workflow_id = Column(String(128), nullable=False)
    workflow_version = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    current_step = Column(Integer, nullable=False, default=0)
    total_steps = Column(Integer, nullable=False)
    priority = Column(String(10), nullable=False, default="medium")
    submitted_at = Column(DateTime(timezone=True))
    due_date = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    resolution_error = Column(Text)
    snapshot = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    decisions = relationship(
        "ApprovalDecisionRecord",
        back_populates="request",
        order_by="ApprovalDecisionRecord.created_at",
    )

    __table_args__ = (
        Index("ix_approval_requests_status_type", "status", "request_type"),
    )


class ApprovalDecisionRecord(Base):
    """One audited action on a request."""

    __tablename__ = "approval_decisions"

    record_id = Column(String(32), primary_key=True)
    request_id = Column(
        String(32), ForeignKey("approval_requests.request_id"), nullable=False, index=True,
    )
    step_index = Column(Integer, nullable=False)
    actor_id = Column(String(128), nullable=False, index=True)
    action = Column(String(20), nullable=False)
    comment = Column(Text)
    on_behalf_of = Column(String(128))
    system = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    request = relationship("ApprovalRequestRecord", back_populates="decisions")
