from __future__ import annotations

from queue import Empty, Full, Queue
import threading
from uuid import uuid4

from battlebridge.observability import get_logger

_log = get_logger('battlebridge.streaming')


class Subscription:
    """Bounded inbox for one live listener; the oldest message is dropped on overflow."""

    def __init__(self, broadcaster: 'EventBroadcaster', *, task_id: str | None, maxsize: int):
        self.subscription_id = f'sub-{uuid4().hex[:8]}'
        self.task_id = task_id
        self._broadcaster = broadcaster
        self._queue: Queue = Queue(maxsize=max(1, int(maxsize)))
        self.dropped = 0

    def matches(self, message: dict) -> bool:
        return self.task_id is None or message.get('task_id') == self.task_id

    def offer(self, message: dict) -> None:
        while True:
            try:
                self._queue.put_nowait(message)
                return
            except Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except Empty:
                    pass

    def get(self, timeout: float | None = None) -> dict | None:
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)


class EventBroadcaster:
    def __init__(self, *, max_queue: int = 1000):
        self.max_queue = max_queue
        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(self, task_id: str | None = None) -> Subscription:
        sub = Subscription(self, task_id=task_id, maxsize=self.max_queue)
        with self._lock:
            self._subscriptions[sub.subscription_id] = sub
        _log.info('live subscriber connected id=%s task_id=%s', sub.subscription_id, task_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            removed = self._subscriptions.pop(sub.subscription_id, None)
        if removed is not None:
            _log.info('live subscriber disconnected id=%s dropped=%s', sub.subscription_id, sub.dropped)

    def publish(self, message: dict) -> int:
        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.matches(message)]
        for sub in targets:
            sub.offer(message)
        return len(targets)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


__all__ = ['EventBroadcaster', 'Subscription']
