"""Request storage and the next-deadline index."""

import heapq
import itertools
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from .errors import RequestNotFound
from .models import ApprovalRequest

logger = logging.getLogger(__name__)


class RequestRepository(Protocol):
    """Storage contract the engine needs for approval requests."""

    def add(self, request: ApprovalRequest) -> None:
        ...

    def get(self, request_id: str) -> ApprovalRequest:
        ...

    def save(self, request: ApprovalRequest) -> None:
        ...

    def list_active(self) -> List[ApprovalRequest]:
        ...

    def list_all(self) -> List[ApprovalRequest]:
        ...


class InMemoryRequestRepository:
    """Dict-backed repository; the default for tests and single processes."""

    def __init__(self) -> None:
        self._requests: Dict[str, ApprovalRequest] = {}
        self._lock = threading.Lock()

    def add(self, request: ApprovalRequest) -> None:
        with self._lock:
            self._requests[request.request_id] = request

    def get(self, request_id: str) -> ApprovalRequest:
        """Return the stored record itself. Callers mutate it under the request lock."""
        request = self._requests.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def save(self, request: ApprovalRequest) -> None:
        # Records are shared by reference; only unknown ids need work.
        with self._lock:
            self._requests.setdefault(request.request_id, request)

    def list_active(self) -> List[ApprovalRequest]:
        with self._lock:
            return [r for r in self._requests.values() if not r.is_terminal]

    def list_all(self) -> List[ApprovalRequest]:
        with self._lock:
            return list(self._requests.values())


class DeadlineIndex:
    """Min-heap of request deadlines with lazy invalidation.

    Rescheduling a request pushes a new entry and marks the old one stale;
    stale entries are dropped when they reach the top of the heap. A tick
    therefore touches only requests whose deadline falls inside its window.
    """

    def __init__(self) -> None:
        self._heap: List[Tuple[datetime, int, str]] = []
        self._current: Dict[str, Tuple[datetime, int]] = {}
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def schedule(self, request_id: str, at: Optional[datetime]) -> None:
        """Set (or clear, with ``at=None``) the deadline for a request."""
        with self._lock:
            if at is None:
                self._current.pop(request_id, None)
                return
            seq = next(self._counter)
            self._current[request_id] = (at, seq)
            heapq.heappush(self._heap, (at, seq, request_id))

    def discard(self, request_id: str) -> None:
        self.schedule(request_id, None)

    def pop_due(self, until: datetime) -> List[str]:
        """Remove and return ids whose deadline is at or before ``until``."""
        due: List[str] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= until:
                at, seq, request_id = heapq.heappop(self._heap)
                if self._current.get(request_id) != (at, seq):
                    continue
                del self._current[request_id]
                due.append(request_id)
        return due

    def deadline_of(self, request_id: str) -> Optional[datetime]:
        with self._lock:
            entry = self._current.get(request_id)
        return entry[0] if entry else None

    def peek(self) -> Optional[datetime]:
        """Earliest live deadline, compacting stale entries on the way."""
        with self._lock:
            while self._heap:
                at, seq, request_id = self._heap[0]
                if self._current.get(request_id) == (at, seq):
                    return at
                heapq.heappop(self._heap)
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._current)
