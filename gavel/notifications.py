"""User-facing notification stream."""
from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from gavel.events import NOTIFICATION, EventBus, Handler

log = logging.getLogger(__name__)


class NotificationKind(Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    OUTBID = "outbid"


@dataclass(frozen=True)
class Notification:
    id: int
    message: str
    kind: NotificationKind
    created_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class NotificationCenter:
    """Issues notifications with monotonic ids and a display lifetime.

    Nothing here is persisted. ``active()`` drops whatever has outlived its
    lifetime; subscribers get every notification as it is pushed.
    """

    def __init__(
        self,
        lifetime_s: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        max_items: int = 50,
    ):
        self._lifetime = lifetime_s
        self._clock = clock
        self._ids = itertools.count(1)
        self._items: deque[Notification] = deque(maxlen=max_items)
        self._bus = EventBus("notifications")

    def push(self, message: str, kind: NotificationKind = NotificationKind.INFO) -> Notification:
        now = self._clock()
        note = Notification(
            id=next(self._ids),
            message=message,
            kind=kind,
            created_at=now,
            expires_at=now + self._lifetime,
        )
        self._items.append(note)
        log.debug("[NOTIFY] #%d %s: %s", note.id, kind.value, message)
        self._bus.publish(NOTIFICATION, note)
        return note

    def success(self, message: str) -> Notification:
        return self.push(message, NotificationKind.SUCCESS)

    def error(self, message: str) -> Notification:
        return self.push(message, NotificationKind.ERROR)

    def warning(self, message: str) -> Notification:
        return self.push(message, NotificationKind.WARNING)

    def info(self, message: str) -> Notification:
        return self.push(message, NotificationKind.INFO)

    def outbid(self, message: str) -> Notification:
        return self.push(message, NotificationKind.OUTBID)

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        return self._bus.subscribe(NOTIFICATION, handler)

    def active(self) -> list[Notification]:
        now = self._clock()
        while self._items and self._items[0].expired(now):
            self._items.popleft()
        return [n for n in self._items if not n.expired(now)]

    def latest(self) -> Optional[Notification]:
        active = self.active()
        return active[-1] if active else None

    def dismiss(self, notification_id: int) -> bool:
        for note in list(self._items):
            if note.id == notification_id:
                self._items.remove(note)
                return True
        return False

    def history(self) -> list[Notification]:
        """Everything still held, expired or not (most recent ``max_items``)."""
        return list(self._items)
