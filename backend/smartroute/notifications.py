from __future__ import annotations

from collections import deque
from threading import Lock
from typing import Any

from .logging_utils import log_event
from .models import Notification, NotificationEvent
from .settings import settings


class NotificationHub:
    """Fire-and-forget outbound events, buffered per user until drained.

    Publishing never fails the caller; a full queue drops its oldest event.
    """

    def __init__(self, *, max_per_user: int | None = None) -> None:
        self._max_per_user = max(1, int(settings.notification_queue_max if max_per_user is None else max_per_user))
        self._lock = Lock()
        self._queues: dict[str, deque[Notification]] = {}

    def publish(self, user_id: str, event: NotificationEvent, payload: dict[str, Any] | None = None) -> Notification:
        notification = Notification(event=event, user_id=user_id, payload=dict(payload or {}))
        with self._lock:
            queue = self._queues.get(user_id)
            if queue is None:
                queue = deque(maxlen=self._max_per_user)
                self._queues[user_id] = queue
            queue.append(notification)
        log_event(
            "notification_published",
            notify_event=event,
            user_id=user_id,
        )
        return notification

    def drain(self, user_id: str) -> list[Notification]:
        with self._lock:
            queue = self._queues.pop(user_id, None)
        return list(queue) if queue else []

    def pending(self, user_id: str) -> int:
        with self._lock:
            queue = self._queues.get(user_id)
            return len(queue) if queue else 0
