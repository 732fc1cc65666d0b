"""Bid submission guard.

Thin policy layer over the channel. A bid goes out only if the channel is
up, the listing is live, the amount is exactly current + increment and the
listing is not in its cool-down window. Nothing is applied locally: the new
price only shows up when the server's UPDATE_BID comes back.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from gavel import events
from gavel.channel import ConnectionManager
from gavel.clock import ClockSynchronizer
from gavel.countdown import evaluate
from gavel.engine import AuctionEngine, money
from gavel.errors import PolicyViolation, TransportError
from gavel.models import ListingId, Number
from gavel.notifications import NotificationCenter

log = logging.getLogger(__name__)


class BidGuard:

    def __init__(
        self,
        manager: ConnectionManager,
        engine: AuctionEngine,
        clock: ClockSynchronizer,
        notifier: NotificationCenter,
        increment: Number = 10,
        cooldown_s: float = 1.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._manager = manager
        self._engine = engine
        self._clock = clock
        self._notify = notifier
        self._increment = increment
        self._cooldown = cooldown_s
        self._monotonic = monotonic
        # listing id -> monotonic time the lock lifts
        self._locked_until: dict[ListingId, float] = {}
        self._sent = 0
        self._refused = 0

    def next_bid(self, listing_id: ListingId) -> Optional[Number]:
        listing = self._engine.get(listing_id)
        return listing.next_bid(self._increment) if listing else None

    def is_cooling_down(self, listing_id: ListingId) -> bool:
        until = self._locked_until.get(listing_id)
        if until is None:
            return False
        if self._monotonic() >= until:
            del self._locked_until[listing_id]
            return False
        return True

    def check(self, listing_id: ListingId, amount: Optional[Number] = None) -> Number:
        """Validate a bid intent; returns the amount to send or raises PolicyViolation."""
        if not self._manager.connected:
            raise PolicyViolation("Not connected to server", listing_id)
        if self.is_cooling_down(listing_id):
            raise PolicyViolation("Bid already in progress, please wait", listing_id)
        listing = self._engine.get(listing_id)
        if listing is None:
            raise PolicyViolation(f"Unknown auction item {listing_id}", listing_id)
        if not listing.is_active or evaluate(listing.end_time, self._clock.now()).expired:
            raise PolicyViolation("This auction has ended", listing_id)
        expected = listing.next_bid(self._increment)
        if amount is not None and amount != expected:
            raise PolicyViolation(f"Bid must be {money(expected)}", listing_id)
        return expected

    async def submit_bid(self, listing_id: ListingId, amount: Optional[Number] = None) -> bool:
        """Send ``BID_PLACED`` if policy allows. Returns True when a frame went out.

        Only a bid that passes ``check`` starts the cool-down. A refused bid
        (a wrong amount, say) leaves the listing
        unlocked so the corrected bid can go out straight away.
        """
        try:
            amount = self.check(listing_id, amount)
        except PolicyViolation as e:
            self._refused += 1
            log.info("[BID] Refused locally on %s: %s", listing_id, e.msg)
            self._notify.error(e.msg)
            return False

        # Lock before the send so a re-click during the await is refused too.
        self._locked_until[listing_id] = self._monotonic() + self._cooldown
        try:
            await self._manager.emit(events.BID_PLACED, {"itemId": listing_id, "bidAmount": amount})
        except TransportError as e:
            log.warning("[BID] Send failed on %s: %s", listing_id, e)
            self._notify.error("Failed to send bid")
            return False
        self._sent += 1
        log.info("[BID] Placed %s on %s", money(amount), listing_id)
        return True

    def get_status(self) -> dict:
        return {
            "sent": self._sent,
            "refused": self._refused,
            "cooling_down": sorted(
                (str(k) for k in list(self._locked_until) if self.is_cooling_down(k)),
            ),
        }
