from __future__ import annotations

import threading
from collections import defaultdict


class KeyedLocks:
    """Hands out one re-entrant lock per account id."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            return self._locks[key]
