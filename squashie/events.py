"""
Notification Bus
================

App-scoped channel for toast-style notifications (achievement unlocked,
SquashCred awarded). Created when the app starts, closed when it stops.

- One bounded queue per user; when full, the oldest message is dropped.
- Only one subscriber may drain a user's queue at a time.
- Publishing never blocks and never raises.
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Iterator, List, Set

from .errors import BusBusy

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    kind: str
    user_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


class Subscription:
    """Exclusive handle on one user's queue"""

    def __init__(self, bus: "NotificationBus", user_id: str):
        self._bus = bus
        self.user_id = user_id

    def drain(self) -> List[Notification]:
        return self._bus._take_all(self.user_id)


class NotificationBus:
    def __init__(self, max_queue_size: int = 50):
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        self.max_queue_size = max_queue_size
        self._channels: Dict[str, Deque[Notification]] = {}
        self._subscribers: Set[str] = set()
        self._lock = threading.Lock()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, notification: Notification) -> bool:
        """Queue a notification. Returns False if the bus is closed."""
        with self._lock:
            if self._closed:
                logger.debug(f"Bus closed, dropping {notification.kind} for {notification.user_id}")
                return False
            channel = self._channels.setdefault(
                notification.user_id, deque(maxlen=self.max_queue_size)
            )
            if len(channel) == self.max_queue_size:
                self.dropped += 1
                logger.warning(
                    f"Notification queue full for user {notification.user_id}, dropping oldest"
                )
            channel.append(notification)
            return True

    def pending(self, user_id: str) -> int:
        with self._lock:
            return len(self._channels.get(user_id, ()))

    @contextmanager
    def subscribe(self, user_id: str) -> Iterator[Subscription]:
        """
        Claim a user's queue for the duration of the block.

        Raises:
            BusBusy: another subscriber holds this user's queue
        """
        with self._lock:
            if user_id in self._subscribers:
                raise BusBusy(f"Notifications for {user_id} are already being drained")
            self._subscribers.add(user_id)
        try:
            yield Subscription(self, user_id)
        finally:
            with self._lock:
                self._subscribers.discard(user_id)

    def drain(self, user_id: str) -> List[Notification]:
        with self.subscribe(user_id) as subscription:
            return subscription.drain()

    def _take_all(self, user_id: str) -> List[Notification]:
        with self._lock:
            channel = self._channels.pop(user_id, None)
        return list(channel) if channel else []

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._channels.clear()
        logger.info("Notification bus closed")
