"""First-in first-out queues of threads."""

from __future__ import annotations

from collections import deque
from typing import Any, Deque, Iterator, Optional


class ThreadQueue:
    """A FIFO queue of threads.

    Threads enter at the front and leave from the back. Every queued object
    carries a ``link`` attribute naming the queue that holds it (or None),
    so a thread can be on only one queue at a time.
    """

    def __init__(self) -> None:
        self._items: Deque[Any] = deque()

    def enqueue(self, thread: Any) -> None:
        """Add a thread to the front of the queue."""
        if getattr(thread, "link", None) is not None:
            raise ValueError(f"{thread!r} is already on a queue")
        self._items.appendleft(thread)
        thread.link = self

    def dequeue(self) -> Optional[Any]:
        """Remove and return the oldest thread, or None if the queue is empty."""
        if not self._items:
            return None
        thread = self._items.pop()
        thread.link = None
        return thread

    def remove(self, thread: Any) -> None:
        """Remove the given thread from wherever it sits in this queue."""
        if getattr(thread, "link", None) is not self:
            raise ValueError(f"{thread!r} is not on this queue")
        self._items.remove(thread)
        thread.link = None

    def clear(self) -> None:
        """Empty the queue, unlinking every thread on it."""
        for thread in self._items:
            thread.link = None
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self) -> Iterator[Any]:
        """Iterate in the order the threads would be dequeued."""
        return reversed(list(self._items))

    def __contains__(self, thread: object) -> bool:
        return getattr(thread, "link", None) is self

    def __repr__(self) -> str:
        return f"ThreadQueue({list(self)!r})"