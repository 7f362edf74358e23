"""Per-case lock registry.

Every read-check-write sequence on a case runs while holding that case's
lock, so two requests against the same case serialize while different
cases proceed in parallel.
"""

from __future__ import annotations

import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


class CaseLocks:
    """Lazily created re-entrant lock per case id.

    The registry only holds weak references: a lock lives as long as some
    caller is using it, so ids that are no longer in use (including ids of
    cases that never existed) do not accumulate.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[str, Any] = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, case_id: str) -> Any:
        """Return the re-entrant lock for ``case_id``, creating it if needed."""
        with self._guard:
            lock = self._locks.get(case_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[case_id] = lock
            return lock

    @contextmanager
    def hold(self, case_id: str) -> Iterator[None]:
        """Hold the lock for ``case_id`` for the duration of the block."""
        lock = self.get(case_id)
        with lock:
            yield
