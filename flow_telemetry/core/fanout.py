"""Synchronous snapshot broadcast to independent consumers."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Generic, List, TypeVar


LOGGER = logging.getLogger(__name__)

S = TypeVar("S")

Unsubscribe = Callable[[], None]


@dataclass
class _Subscriber(Generic[S]):
    subscriber_id: str
    callback: Callable[[S], None]
    active: bool = True


class SnapshotBroadcaster(Generic[S]):
    """Fan out published snapshots to every registered subscriber.

    Delivery is synchronous and ordered: every subscriber sees snapshot *N*
    before any subscriber sees *N+1*.  A publish issued from inside a
    subscriber callback is queued and delivered once the current round
    completes.  A subscriber that raises is logged and skipped; the remaining
    subscribers still receive the snapshot.
    """

    def __init__(self, initial: S) -> None:
        self._current = initial
        self._subscribers: List[_Subscriber[S]] = []
        self._pending: Deque[S] = deque()
        self._delivering = False
        self._published = 0
        self._delivered_counts: Counter[str] = Counter()
        self._failed_counts: Counter[str] = Counter()
        self._dropped_counts: Counter[str] = Counter()
        self._queues: Dict[asyncio.Queue, Unsubscribe] = {}

    @property
    def current(self) -> S:
        return self._current

    @property
    def subscriber_count(self) -> int:
        return sum(1 for subscriber in self._subscribers if subscriber.active)

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------
    def subscribe(
        self,
        callback: Callable[[S], None],
        *,
        subscriber_id: str = "anonymous",
    ) -> Unsubscribe:
        """Register ``callback`` and deliver the current snapshot to it.

        The returned handle is idempotent; once called, ``callback`` receives
        nothing further, including snapshots of a round already in progress.
        """

        subscriber = _Subscriber(subscriber_id=subscriber_id, callback=callback)
        self._subscribers.append(subscriber)
        self._deliver(subscriber, self._current)

        def _unsubscribe() -> None:
            if not subscriber.active:
                return
            subscriber.active = False
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass

        return _unsubscribe

    def register_queue(
        self,
        *,
        maxsize: int = 1,
        subscriber_id: str = "queue",
    ) -> "asyncio.Queue[Any]":
        """Bridge snapshots into an asyncio queue for task-based consumers.

        When the queue is full the oldest pending snapshot is discarded, so a
        slow consumer always catches up to the latest state.
        """

        if maxsize <= 0:
            raise ValueError("maxsize must be positive")

        queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)

        def _enqueue(snapshot: S) -> None:
            while True:
                try:
                    queue.put_nowait(snapshot)
                except asyncio.QueueFull:
                    self._dropped_counts[subscriber_id] += 1
                    try:
                        queue.get_nowait()
                    except asyncio.QueueEmpty:
                        pass
                    continue
                return

        self._queues[queue] = self.subscribe(_enqueue, subscriber_id=subscriber_id)
        return queue

    def unregister_queue(self, queue: asyncio.Queue) -> None:
        unsubscribe = self._queues.pop(queue, None)
        if unsubscribe is not None:
            unsubscribe()

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------
    def publish(self, snapshot: S) -> None:
        self._pending.append(snapshot)
        if self._delivering:
            return

        self._delivering = True
        try:
            while self._pending:
                current = self._pending.popleft()
                self._current = current
                self._published += 1
                for subscriber in list(self._subscribers):
                    if subscriber.active:
                        self._deliver(subscriber, current)
        finally:
            self._delivering = False

    def _deliver(self, subscriber: _Subscriber[S], snapshot: S) -> None:
        try:
            subscriber.callback(snapshot)
        except Exception:
            self._failed_counts[subscriber.subscriber_id] += 1
            LOGGER.exception(
                "Snapshot subscriber %s failed",
                subscriber.subscriber_id,
                extra={"subscriber": subscriber.subscriber_id},
            )
        else:
            self._delivered_counts[subscriber.subscriber_id] += 1

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    def metrics_snapshot(self) -> Dict[str, Any]:
        """Return publication, delivery, failure and drop counters."""

        return {
            "published": self._published,
            "delivered": dict(self._delivered_counts),
            "failed": dict(self._failed_counts),
            "dropped": dict(self._dropped_counts),
        }

    def subscriber_snapshot(self) -> List[Dict[str, Any]]:
        return [
            {"subscriber": subscriber.subscriber_id, "active": subscriber.active}
            for subscriber in self._subscribers
        ]

    def reset_metrics(self) -> None:
        self._delivered_counts.clear()
        self._failed_counts.clear()
        self._dropped_counts.clear()
