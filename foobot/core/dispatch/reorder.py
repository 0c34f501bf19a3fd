from __future__ import annotations

from typing import Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class ReorderBuffer(Generic[T]):
    """
    Release items in sequence order regardless of completion order.

    Every sequence number must be pushed exactly once. A None item holds its
    slot (so later items can be released) but is not returned.
    """

    def __init__(self, start: int = 0) -> None:
        self._next = start
        self._pending: Dict[int, Optional[T]] = {}

    @property
    def next_expected(self) -> int:
        return self._next

    def __len__(self) -> int:
        return len(self._pending)

    def push(self, sequence: int, item: Optional[T]) -> List[T]:
        if sequence < self._next or sequence in self._pending:
            raise ValueError(f"sequence {sequence} already released or pending")

        self._pending[sequence] = item
        released: List[T] = []
        while self._next in self._pending:
            ready = self._pending.pop(self._next)
            self._next += 1
            if ready is not None:
                released.append(ready)
        return released
