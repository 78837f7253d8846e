"""Approval statistics for dashboards and the CLI."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from .config import RequestStatus, StepAction
from .models import ApprovalRequest


@dataclass
class ApprovalStats:
    total_requests: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    by_type: Dict[str, Dict[str, int]] = field(default_factory=dict)
    average_approval_hours: Optional[float] = None
    top_approvers: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "by_status": dict(self.by_status),
            "by_type": {k: dict(v) for k, v in self.by_type.items()},
            "average_approval_hours": self.average_approval_hours,
            "top_approvers": list(self.top_approvers),
        }


def requests_frame(requests: Iterable[ApprovalRequest]) -> pd.DataFrame:
    """One row per request."""
    rows = [
        {
            "request_id": r.request_id,
            "request_type": r.request_type.value,
            "status": r.status.value,
            "submitted_at": r.submitted_at or r.created_at,
            "completed_at": r.completed_at,
        }
        for r in requests
    ]
    return pd.DataFrame(
        rows, columns=["request_id", "request_type", "status", "submitted_at", "completed_at"],
    )


def decisions_frame(requests: Iterable[ApprovalRequest]) -> pd.DataFrame:
    """One row per human approval, with the time it waited since the previous entry."""
    rows = []
    for request in requests:
        previous = request.submitted_at or request.created_at
        for record in request.history:
            if record.action == StepAction.APPROVE.value and not record.system:
                rows.append({
                    "approver_id": record.actor_id,
                    "request_id": request.request_id,
                    "response_hours": (record.created_at - previous).total_seconds() / 3600,
                })
            previous = record.created_at
    return pd.DataFrame(rows, columns=["approver_id", "request_id", "response_hours"])


def compute_stats(requests: Iterable[ApprovalRequest], top_n: int = 5) -> ApprovalStats:
    requests = list(requests)
    stats = ApprovalStats(total_requests=len(requests))
    if not requests:
        return stats

    df = requests_frame(requests)
    stats.by_status = {k: int(v) for k, v in df["status"].value_counts().items()}

    for request_type, group in df.groupby("request_type"):
        stats.by_type[str(request_type)] = {
            "count": int(len(group)),
            "approved": int((group["status"] == RequestStatus.APPROVED.value).sum()),
            "rejected": int((group["status"] == RequestStatus.REJECTED.value).sum()),
        }

    approved = df[(df["status"] == RequestStatus.APPROVED.value) & df["completed_at"].notna()]
    if not approved.empty:
        durations = (
            pd.to_datetime(approved["completed_at"], utc=True)
            - pd.to_datetime(approved["submitted_at"], utc=True)
        ).dt.total_seconds() / 3600
        stats.average_approval_hours = round(float(durations.mean()), 2)

    decisions = decisions_frame(requests)
    if not decisions.empty:
        summary = (
            decisions.groupby("approver_id")
            .agg(approvals=("request_id", "count"), avg_response_hours=("response_hours", "mean"))
            .sort_values(["approvals", "avg_response_hours"], ascending=[False, True])
            .head(top_n)
        )
        stats.top_approvers = [
            {
                "approver_id": str(approver_id),
                "approvals": int(row["approvals"]),
                "avg_response_hours": round(float(row["avg_response_hours"]), 2),
            }
            for approver_id, row in summary.iterrows()
        ]
    return stats
