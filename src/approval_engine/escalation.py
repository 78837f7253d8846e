"""Escalation Scheduler.

A single recurring timer drives every time-based transition. Each tick
pops only the requests whose next deadline falls inside the window from
the engine's ``DeadlineIndex`` and asks the engine to apply its timer
policy to them.
"""

import logging
import threading
from concurrent.futures import wait
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .dispatch import DecisionDispatcher
from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


class EscalationScheduler:
    """Periodically applies due timers (escalation, auto-approve, expiry)."""

    def __init__(
        self,
        engine: WorkflowEngine,
        interval_seconds: Optional[float] = None,
        dispatcher: Optional[DecisionDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds or engine.config.scheduler_interval_seconds
        self.dispatcher = dispatcher
        self.clock = clock or engine.clock
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Process every request whose deadline is at or before ``now``.

        Returns the ids handled. Failures are logged per request and the
        request is retried on the next tick.
        """
        now = now or self.clock()
        due = self.engine.deadlines.pop_due(now)
        self.ticks += 1
        if not due:
            return []

        logger.debug("Scheduler tick at %s: %d due request(s)", now.isoformat(), len(due))
        if self.dispatcher is not None:
            futures = {
                self.dispatcher.submit_timer_check(request_id, now): request_id
                for request_id in due
            }
            wait(list(futures))
            for future, request_id in futures.items():
                if future.exception() is not None:
                    self._retry_later(request_id, now)
        else:
            for request_id in due:
                try:
                    self.engine.process_timers(request_id, now)
                except Exception:
                    logger.exception("Timer processing failed for %s", request_id)
                    self._retry_later(request_id, now)
        return due

    def _retry_later(self, request_id: str, now: datetime) -> None:
        self.engine.deadlines.schedule(
            request_id, now + timedelta(seconds=self.interval_seconds),
        )

    # ── Background loop ──────────────────────────────────────────────

    def start(self) -> None:
        """Start the recurring tick in a background thread."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="approval-escalation",
        )
        self._thread.start()
        logger.info("Escalation scheduler started (interval=%ss)", self.interval_seconds)

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=self.interval_seconds + 1)
        self._thread = None
        logger.info("Escalation scheduler stopped")

    def _run_loop(self) -> None:
        while self._running:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick error: {e}")
            self._stop_event.wait(self.interval_seconds)
