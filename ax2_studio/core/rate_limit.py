from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Callable


class SlidingWindowLimiter:
    """Caps job submissions per account over a rolling window."""

    def __init__(
        self,
        max_events: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_events = max_events
        self.window_seconds = window_seconds
        self.clock = clock
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, account_id: str) -> bool:
        now = self.clock()
        with self._lock:
            q = self._prune(account_id, now)
            if len(q) >= self.max_events:
                return False
            q.append(now)
            return True

    def remaining(self, account_id: str) -> int:
        with self._lock:
            return max(0, self.max_events - len(self._prune(account_id, self.clock())))

    def _prune(self, account_id: str, now: float) -> deque[float]:
        cutoff = now - self.window_seconds
        q = self._events[account_id]
        while q and q[0] < cutoff:
            q.popleft()
        return q
