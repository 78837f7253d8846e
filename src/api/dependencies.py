"""FastAPI dependencies.

The engine lives on ``app.state`` so each application (and each test)
gets its own instance.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request

from src.approval_engine import WorkflowEngine


def get_engine(request: Request) -> WorkflowEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Approval engine not initialized")
    return engine


def get_actor_id(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Calling account from the ``X-Actor-ID`` header, if sent."""
    return x_actor_id


def require_admin(request: Request, x_actor_id: Optional[str] = Header(default=None)) -> str:
    engine = get_engine(request)
    if not x_actor_id or x_actor_id not in {a.account_id for a in engine.org.admins()}:
        raise HTTPException(status_code=403, detail="Administrator access required")
    return x_actor_id
