"""Per-key mutual exclusion."""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class KeyedLock:
    """Hands out one lock per key and forgets it when nobody holds it.

    Mutations of one request (or one delegator's grants) are serialized;
    different keys never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._holders[key] = self._holders.get(key, 0) + 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]

    def active_keys(self) -> List[str]:
        with self._guard:
            return list(self._locks)
