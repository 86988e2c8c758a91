"""Fixed-capacity circular buffer used for every bounded history in the engine.

Fusion history, validation training samples, calibration reference pairs and
performance metrics all keep "the last N items".  Appends are O(1): once the
buffer is full the write index wraps and overwrites the oldest slot.
"""

from __future__ import annotations

from typing import Generic, Iterable, Iterator, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Bounded FIFO that evicts the oldest item on overflow.

    Iteration always yields items oldest → newest.

    Usage::

        history: RingBuffer[FusionResult] = RingBuffer(20)
        history.append(result)
        last_five = history.last(5)
    """

    def __init__(self, capacity: int, items: Iterable[T] = ()) -> None:
        if capacity <= 0:
            raise ValueError(f"RingBuffer capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._slots: list[T | None] = [None] * capacity
        self._start = 0  # index of the oldest item
        self._size = 0
        for item in items:
            self.append(item)

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return self._size

    def __bool__(self) -> bool:
        return self._size > 0

    def __iter__(self) -> Iterator[T]:
        for offset in range(self._size):
            yield self._slots[(self._start + offset) % self._capacity]  # type: ignore[misc]

    def __getitem__(self, index: int) -> T:
        if index < 0:
            index += self._size
        if not 0 <= index < self._size:
            raise IndexError("RingBuffer index out of range")
        return self._slots[(self._start + index) % self._capacity]  # type: ignore[return-value]

    def __repr__(self) -> str:
        return f"RingBuffer(capacity={self._capacity}, size={self._size})"

    @property
    def is_full(self) -> bool:
        return self._size == self._capacity

    def append(self, item: T) -> T | None:
        """Append an item, returning the evicted oldest item (if any)."""
        if self._size < self._capacity:
            self._slots[(self._start + self._size) % self._capacity] = item
            self._size += 1
            return None

        evicted = self._slots[self._start]
        self._slots[self._start] = item
        self._start = (self._start + 1) % self._capacity
        return evicted

    def last(self, n: int) -> list[T]:
        """Return up to the ``n`` most recent items, oldest first."""
        if n <= 0:
            return []
        n = min(n, self._size)
        return [self[i] for i in range(self._size - n, self._size)]

    def newest(self) -> T | None:
        return self[-1] if self._size else None

    def to_list(self) -> list[T]:
        return list(self)

    def clear(self) -> None:
        self._slots = [None] * self._capacity
        self._start = 0
        self._size = 0

    def resize(self, capacity: int) -> None:
        """Change capacity in place, keeping the most recent items."""
        if capacity <= 0:
            raise ValueError(f"RingBuffer capacity must be positive, got {capacity}")
        kept = self.last(capacity)
        self._capacity = capacity
        self.clear()
        for item in kept:
            self.append(item)
