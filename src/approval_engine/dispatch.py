"""Worker pool for decision and timer events."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from .config import StepAction
from .errors import ApprovalEngineError
from .models import ApprovalRequest

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


class DecisionDispatcher:
    """Runs engine calls on a thread pool.

    Calls for the same request serialize on the engine's per-request lock;
    calls for different requests run in parallel. A failure stays inside
    its future and never reaches other work.
    """

    def __init__(self, engine: "WorkflowEngine", max_workers: Optional[int] = None) -> None:
        self.engine = engine
        self.max_workers = max_workers or engine.config.worker_count
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="approval-worker",
        )

    def submit_decision(
        self,
        request_id: str,
        actor_id: str,
        action: StepAction,
        comment: Optional[str] = None,
        delegate_to: Optional[str] = None,
    ) -> "Future[ApprovalRequest]":
        future = self._pool.submit(
            self.engine.decide, request_id, actor_id, action, comment, delegate_to,
        )
        future.add_done_callback(lambda f: self._log_failure(f, request_id, "decision"))
        return future

    def submit_timer_check(
        self, request_id: str, at: Optional[datetime] = None,
    ) -> "Future[ApprovalRequest]":
        future = self._pool.submit(self.engine.process_timers, request_id, at)
        future.add_done_callback(lambda f: self._log_failure(f, request_id, "timer check"))
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "DecisionDispatcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    @staticmethod
    def _log_failure(future: Future, request_id: str, kind: str) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            return
        if isinstance(exc, ApprovalEngineError):
            logger.info("%s for %s refused: %s", kind.capitalize(), request_id, exc.message)
        else:
            logger.error("%s for %s failed: %r", kind.capitalize(), request_id, exc)
