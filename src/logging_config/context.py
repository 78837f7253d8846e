"""Request Context Management.

Context variables binding the HTTP request id, the acting account and the
approval request being worked on to every log entry emitted meanwhile.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
_actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")
_approval_id_var: ContextVar[str] = ContextVar("approval_request_id", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def generate_request_id() -> str:
    """Generate a unique request ID using UUID4."""
    return str(uuid.uuid4())


def get_request_id() -> str:
    return _request_id_var.get()


def get_actor_id() -> str:
    return _actor_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """All bound context values, for merging into a log entry."""
    ctx = {}
    for key, var in (
        ("request_id", _request_id_var),
        ("correlation_id", _correlation_id_var),
        ("actor_id", _actor_id_var),
        ("approval_request_id", _approval_id_var),
    ):
        value = var.get()
        if value:
            ctx[key] = value
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class RequestContext:
    """Context manager binding tracing fields to all logs inside it.

    Previous values are restored on exit, so contexts nest: the HTTP
    middleware binds the request id, a route then binds the actor and the
    approval request it touches.

    Example:
        with RequestContext(actor_id="alice", approval_request_id="ab12"):
            logger.info("deciding")  # includes actor_id, approval_request_id
    """

    request_id: str = ""
    correlation_id: str = ""
    actor_id: str = ""
    approval_request_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _tokens: list = field(default_factory=list, repr=False)

    def __enter__(self) -> "RequestContext":
        self._tokens = [
            (_request_id_var, _request_id_var.set(self.request_id or _request_id_var.get())),
            (_correlation_id_var, _correlation_id_var.set(
                self.correlation_id or self.request_id or _correlation_id_var.get()
            )),
            (_actor_id_var, _actor_id_var.set(self.actor_id or _actor_id_var.get())),
            (_approval_id_var, _approval_id_var.set(
                self.approval_request_id or _approval_id_var.get()
            )),
            (_extra_context_var, _extra_context_var.set(
                {**_extra_context_var.get(), **self.extra}
            )),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the active context."""
        _extra_context_var.set({**_extra_context_var.get(), **kwargs})
        self.extra.update(kwargs)
