# pixelgrid/idempotency_cache.py

import threading
from collections import OrderedDict


class SettledRefCache:
    """
    Process-local cache of settlement refs that reached a terminal state.

    - Only a fast path: the database stays the authority on duplicates.
    - Bounded; the oldest refs are evicted first.
    """

    def __init__(self, max_keys: int = 10000) -> None:
        self._lock = threading.Lock()
        self._keys: "OrderedDict[str, None]" = OrderedDict()
        self.max_keys = max_keys

    def add(self, key: str) -> None:
        if not key:
            return
        with self._lock:
            self._keys[str(key)] = None
            self._keys.move_to_end(str(key))
            while len(self._keys) > self.max_keys:
                self._keys.popitem(last=False)

    def __contains__(self, key: str) -> bool:
        if not key:
            return False
        with self._lock:
            return str(key) in self._keys
