import threading
from contextlib import contextmanager
from typing import Dict, List


class KeyedLocks:
    """
    One mutex per key (invoice id), created on demand and dropped once no
    thread holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders + waiters]
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
