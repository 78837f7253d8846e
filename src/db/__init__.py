"""Database package for the approval engine."""

from src.db.base import Base
from src.db.engine import build_engine, get_sync_engine, get_sync_session_factory, SyncSessionLocal
from src.db.models import ApprovalDecisionRecord, ApprovalRequestRecord

__all__ = [
    "Base",
    "build_engine",
    "get_sync_engine",
    "get_sync_session_factory",
    "SyncSessionLocal",
    "ApprovalRequestRecord",
    "ApprovalDecisionRecord",
]
