"""Fixed-capacity FIFO used for streamed log entries."""

from __future__ import annotations

from collections import deque
from typing import Deque, Generic, Iterable, Iterator, Optional, Tuple, TypeVar


__all__ = ["BoundedEventBuffer"]

T = TypeVar("T")


class BoundedEventBuffer(Generic[T]):
    """Append-only sequence that evicts the oldest item once full.

    Eviction follows arrival order only; reading an item never changes its
    position.  :meth:`snapshot` returns a tuple that later appends cannot
    modify, and the tuple is reused until the buffer changes again.
    """

    def __init__(self, capacity: int = 1000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")

        self._capacity = capacity
        self._items: Deque[T] = deque(maxlen=capacity)
        self._snapshot: Optional[Tuple[T, ...]] = ()
        self._evicted = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evicted(self) -> int:
        """Number of items dropped because the buffer was full."""

        return self._evicted

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self.snapshot())

    def append(self, item: T) -> Optional[T]:
        """Append ``item`` and return the evicted item, if any."""

        evicted: Optional[T] = None
        if len(self._items) == self._capacity:
            evicted = self._items.popleft()
            self._evicted += 1
        self._items.append(item)
        self._snapshot = None
        return evicted

    def extend(self, items: Iterable[T]) -> None:
        for item in items:
            self.append(item)

    def clear(self) -> None:
        self._items.clear()
        self._snapshot = ()

    def snapshot(self) -> Tuple[T, ...]:
        if self._snapshot is None:
            self._snapshot = tuple(self._items)
        return self._snapshot
