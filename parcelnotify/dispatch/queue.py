"""In-process delayed task queue.

Tasks are ordered by their not-before time; ties keep insertion order.
Producers (event ingestion, the retry scheduler) call ``enqueue`` from any
thread; the dispatch worker polls ``pop_due`` and sleeps on ``wait``.
"""
from __future__ import annotations

import heapq
import itertools
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID


@dataclass(frozen=True)
class NotifyEventTask:
    event_id: UUID


@dataclass(frozen=True)
class RetryDeliveryTask:
    delivery_record_id: UUID


def _epoch(moment: datetime | None) -> float:
    if moment is None:
        return datetime.now(timezone.utc).timestamp()
    if moment.tzinfo is None:
        # Naive values are read back from databases that drop the offset; they are UTC.
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


class DispatchQueue:
    def __init__(self) -> None:
        self._heap: list[tuple[float, int, object]] = []
        self._counter = itertools.count()
        self._queued: Counter = Counter()
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)

    def __contains__(self, task) -> bool:
        with self._cond:
            return self._queued[task] > 0

    def enqueue(self, task, not_before: datetime | None = None) -> None:
        """Add *task*, runnable from *not_before* (now when omitted)."""
        with self._cond:
            self._push(task, not_before)

    def enqueue_once(self, task, not_before: datetime | None = None) -> bool:
        """Add *task* unless an equal task is already waiting; return True if added."""
        with self._cond:
            if self._queued[task] > 0:
                return False
            self._push(task, not_before)
            return True

    def _push(self, task, not_before: datetime | None) -> None:
        heapq.heappush(self._heap, (_epoch(not_before), next(self._counter), task))
        self._queued[task] += 1
        self._cond.notify_all()

    def pop_due(self, now: datetime | None = None):
        """Remove and return the earliest task due at *now*, or None."""
        cutoff = _epoch(now)
        with self._cond:
            if self._heap and self._heap[0][0] <= cutoff:
                task = heapq.heappop(self._heap)[2]
                self._queued[task] -= 1
                if self._queued[task] <= 0:
                    del self._queued[task]
                return task
            return None

    def next_due_at(self) -> datetime | None:
        with self._cond:
            if not self._heap:
                return None
            return datetime.fromtimestamp(self._heap[0][0], tz=timezone.utc)

    def wait(self, timeout: float) -> None:
        """Block until a task is enqueued or *timeout* seconds pass."""
        with self._cond:
            self._cond.wait(timeout)

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def clear(self) -> None:
        with self._cond:
            self._heap.clear()
            self._queued.clear()
