"""Event names and a small synchronous pub/sub bus.

Everything runs on one asyncio loop, so handlers are plain callables invoked
inline by ``publish``. A failing handler is logged and skipped; it never
stops delivery to the others.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gavel.models import ConnectionState

log = logging.getLogger(__name__)

# ── Server → client (channel frames) ──
SESSION = "SESSION"
INITIAL_DATA = "INITIAL_DATA"
UPDATE_BID = "UPDATE_BID"
BID_SUCCESS = "BID_SUCCESS"
BID_ERROR = "BID_ERROR"
OUTBID = "OUTBID"
AUCTION_ENDED = "AUCTION_ENDED"
TIME_SYNC = "TIME_SYNC"

SERVER_EVENTS = (
    INITIAL_DATA, UPDATE_BID, BID_SUCCESS, BID_ERROR,
    OUTBID, AUCTION_ENDED, TIME_SYNC,
)

# ── Client → server ──
BID_PLACED = "BID_PLACED"
REQUEST_SYNC = "REQUEST_SYNC"

# ── Channel lifecycle (published by ConnectionManager) ──
CONNECT = "connect"
DISCONNECT = "disconnect"
CONNECT_ERROR = "connect_error"
RECONNECT_ATTEMPT = "reconnect_attempt"
RECONNECT = "reconnect"
RECONNECT_FAILED = "reconnect_failed"
STATE = "state"
STATUS = "status"

# ── Engine output ──
LISTINGS = "listings"
LISTING = "listing"
ENDED = "ended"
COUNTDOWN = "countdown"
NOTIFICATION = "notification"

# Disconnect reasons
REASON_CLIENT = "client disconnect"
REASON_SERVER = "server disconnect"
REASON_TRANSPORT = "transport close"

Handler = Callable[[Any], None]


@dataclass(frozen=True)
class Lifecycle:
    """Payload of every channel lifecycle signal."""
    state: ConnectionState
    reason: str = ""
    attempt: int = 0
    participant_id: Optional[str] = None
    manual: bool = False


class EventBus:
    """Topic → handler list, with explicit unsubscribe."""

    def __init__(self, name: str = "bus"):
        self.name = name
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``topic``. Returns a callable that removes it."""
        self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(topic, handler)

        return _unsubscribe

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[topic]

    def publish(self, topic: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every handler of ``topic``; returns delivered count."""
        delivered = 0
        for handler in list(self._handlers.get(topic, ())):
            try:
                handler(payload)
                delivered += 1
            except Exception:
                log.exception("[%s] Handler %r failed on %s", self.name, handler, topic)
        return delivered

    def handler_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._handlers.get(topic, ()))
        return sum(len(h) for h in self._handlers.values())

    def clear(self) -> None:
        self._handlers.clear()
