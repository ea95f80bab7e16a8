from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime
from typing import Generic, TypeVar

from .models import MetricSnapshot


T = TypeVar("T")


class BoundedHistory(Generic[T]):
    """
    Append-only ring buffer.

    Once ``capacity`` items are held, every append evicts exactly the oldest
    item. Iteration is oldest-first.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"History capacity must be positive, got {capacity}")
        self._items: deque[T] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._items.maxlen or 0

    def append(self, item: T) -> None:
        self._items.append(item)

    def extend(self, items: Iterable[T]) -> None:
        self._items.extend(items)

    def latest(self) -> T | None:
        return self._items[-1] if self._items else None

    def recent(self, limit: int | None = None) -> list[T]:
        """Most recent items, oldest-first."""
        items = list(self._items)
        if limit is None:
            return items
        if limit <= 0:
            return []
        return items[-limit:]

    def drop_where(self, predicate: Callable[[T], bool]) -> int:
        kept = [item for item in self._items if not predicate(item)]
        dropped = len(self._items) - len(kept)
        self._items.clear()
        self._items.extend(kept)
        return dropped

    def drop_before(self, before: datetime, key: Callable[[T], datetime]) -> int:
        return self.drop_where(lambda item: key(item) < before)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))


class MetricHistory(BoundedHistory[MetricSnapshot]):
    """Snapshot history read by trend conditions. Written only by the check runner."""

    def window(self, start: datetime, end: datetime | None = None) -> list[MetricSnapshot]:
        return [
            snap for snap in self._items
            if snap.timestamp >= start and (end is None or snap.timestamp <= end)
        ]
