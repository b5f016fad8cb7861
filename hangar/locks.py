"""Named re-entrant locks that are dropped once nobody holds or waits on them."""

from __future__ import annotations

import threading
from contextlib import contextmanager


class LockTable:
    """
    One ``RLock`` per key, created on first use.

    An entry counts the threads holding or waiting on it and is removed when
    that count returns to zero, so the table only holds keys in use.

    Example:
        >>> locks = LockTable()
        >>> with locks.hold("sha256:..."):
        ...     update_count()
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]
