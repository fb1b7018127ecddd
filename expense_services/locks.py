"""
expense_services.locks -- Per-key mutual exclusion.

Responsibility:
    Serialize work on the same key (an expense id) inside one process while
    letting different keys proceed in parallel.

Architecture position:
    Services -- used by ``ExpenseApprovalEngine`` around each transition.
    Cross-process serialization is the database's job (SELECT ... FOR
    UPDATE on the expense row plus the optimistic version column).

Invariants enforced:
    - At most one holder per key at a time.
    - Entries are dropped when their last holder leaves, so the table does
      not grow with the number of expenses ever touched.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLock:
    """A lock per key, created on demand."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
