"""AuctionEngine — folds channel events into listing state.

The engine is the only writer of the listing collection. Presentation reads
copies via ``listings()`` or follows the LISTINGS / LISTING / ENDED topics on
``engine.events``.

Reconciliation rules:
  - INITIAL_DATA replaces the whole collection and re-seeds the clock
  - UPDATE_BID sets bid + bidder and bumps bidCount by one
  - AUCTION_ENDED flips isActive once; repeats are no-ops
  - TIME_SYNC feeds the clock
  - BID_ERROR / OUTBID only produce notifications
  - unknown listing ids are ignored, malformed payloads are dropped

Duplicates: bid events that carry a ``version`` are applied only if it is
strictly greater than the listing's last applied version. Events without
one cannot be told apart and are applied every time they arrive.

Resync: after every (re)connect the engine re-fetches the snapshot. Bid and
end events arriving before the snapshot lands are held back and replayed on
top of it, so a late snapshot can never overwrite fresher updates.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from gavel import events
from gavel.clock import ClockSynchronizer
from gavel.errors import ProtocolError, SnapshotLoadError, SubmissionRejected
from gavel.events import EventBus, Lifecycle
from gavel.models import (
    AuctionListing,
    ListingId,
    Number,
    optional_bidder,
    optional_version,
    require_id,
    require_number,
)
from gavel.notifications import NotificationCenter

if TYPE_CHECKING:
    from gavel.channel import ConnectionManager

log = logging.getLogger(__name__)

SnapshotLoader = Callable[[], Awaitable[tuple[list[AuctionListing], Optional[float]]]]

MAX_PENDING = 1000


def money(value: Number) -> str:
    if float(value).is_integer():
        return f"${value:,.0f}"
    return f"${value:,.2f}"


def _payload(data: Any, event: str) -> dict:
    if not isinstance(data, dict):
        raise ProtocolError(f"payload is not an object: {data!r}", event)
    return data


class AuctionEngine:
    """Event reconciliation engine for the listing collection."""

    def __init__(
        self,
        clock: ClockSynchronizer,
        notifier: NotificationCenter,
        loader: Optional[SnapshotLoader] = None,
        participant: Optional[Callable[[], Optional[str]]] = None,
    ):
        self._clock = clock
        self._notify = notifier
        self._loader = loader
        self._participant = participant
        self._listings: dict[ListingId, AuctionListing] = {}
        self.events = EventBus("engine")

        self._manager: Optional[ConnectionManager] = None
        self._unsubscribers: list[Callable[[], None]] = []

        # Resync window
        self._awaiting_snapshot = False
        self._pending: list[tuple[str, Any]] = []
        self._snapshot_task: Optional[asyncio.Task] = None

        self._loaded = False
        self._degraded = False
        self._outbid_seen: set[tuple[ListingId, Number]] = set()
        self.last_rejection: Optional[SubmissionRejected] = None

        # Stats
        self._applied = 0
        self._dropped = 0
        self._duplicates = 0

        self._handlers: dict[str, Callable[[Any], None]] = {
            events.INITIAL_DATA: self._on_initial_data,
            events.UPDATE_BID: self._on_update_bid,
            events.BID_SUCCESS: self._on_bid_success,
            events.BID_ERROR: self._on_bid_error,
            events.OUTBID: self._on_outbid,
            events.AUCTION_ENDED: self._on_auction_ended,
            events.TIME_SYNC: self._on_time_sync,
        }

    # ── Read side ──

    def listings(self) -> list[AuctionListing]:
        return [dataclasses.replace(l) for l in self._listings.values()]

    def get(self, listing_id: ListingId) -> Optional[AuctionListing]:
        listing = self._listings.get(listing_id)
        return dataclasses.replace(listing) if listing else None

    @property
    def local_participant(self) -> Optional[str]:
        if self._participant is not None:
            return self._participant()
        if self._manager is not None:
            return self._manager.participant_id
        return None

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def awaiting_snapshot(self) -> bool:
        return self._awaiting_snapshot

    # ── Channel wiring ──

    def attach(self, manager: ConnectionManager) -> None:
        """Subscribe to every server event and lifecycle signal of ``manager``."""
        self.detach()
        self._manager = manager
        bus = manager.events
        subs = [bus.subscribe(name, self._route(name)) for name in events.SERVER_EVENTS]
        subs += [
            bus.subscribe(events.CONNECT, self._on_connect),
            bus.subscribe(events.CONNECT_ERROR, self._on_connect_error),
            bus.subscribe(events.RECONNECT, self._on_reconnect),
            bus.subscribe(events.DISCONNECT, self._on_disconnect),
            bus.subscribe(events.RECONNECT_FAILED, self._on_reconnect_failed),
            bus.subscribe(events.STATUS, self._on_status),
        ]
        self._unsubscribers = subs

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._manager = None
        self._cancel_snapshot_task()

    def _route(self, event: str) -> Callable[[Any], None]:
        def _handler(data: Any) -> None:
            self.handle(event, data)
        return _handler

    def handle(self, event: str, data: Any) -> None:
        """Apply one server event. Malformed payloads are logged and dropped."""
        handler = self._handlers.get(event)
        if handler is None:
            log.debug("[SYNC] Ignoring unknown event %s", event)
            return
        try:
            handler(data)
        except ProtocolError as e:
            self._dropped += 1
            log.warning("[SYNC] Dropped %s: %s", event, e)

    # ── Snapshot ──

    def apply_snapshot(self, listings: list[AuctionListing], server_time: Optional[float] = None) -> None:
        """Replace the collection, then replay anything held back during resync."""
        if server_time is not None:
            self._clock.apply(server_time)
        self._listings = {l.id: l for l in listings}
        self._outbid_seen.clear()
        self._loaded = True
        self._degraded = False
        log.info("[SYNC] Snapshot applied: %d listings", len(self._listings))
        self.events.publish(events.LISTINGS, self.listings())
        self._end_resync(replay=True)

    async def load_snapshot(self) -> bool:
        """Fetch and apply a snapshot through the loader. False on failure."""
        if self._loader is None:
            return False
        try:
            listings, server_time = await self._loader()
        except (SnapshotLoadError, ProtocolError) as e:
            self.snapshot_failed(e)
            return False
        self.apply_snapshot(listings, server_time)
        return True

    def snapshot_failed(self, error: Exception) -> None:
        """Degrade to an empty collection until a snapshot succeeds."""
        log.error("[SYNC] Snapshot load failed: %s", error)
        self._listings = {}
        self._outbid_seen.clear()
        self._degraded = True
        self._pending.clear()
        self._awaiting_snapshot = False
        self._notify.error("Failed to load auction items")
        self.events.publish(events.LISTINGS, [])

    def begin_resync(self) -> None:
        """Hold back bid/end events and fetch a fresh snapshot."""
        if self._loader is None:
            # The server's own INITIAL_DATA is the only snapshot source.
            return
        self._awaiting_snapshot = True
        self._pending.clear()
        self._cancel_snapshot_task()
        self._snapshot_task = asyncio.create_task(self.load_snapshot())

    def _end_resync(self, replay: bool) -> None:
        pending, self._pending = self._pending, []
        self._awaiting_snapshot = False
        if not replay or not pending:
            return
        log.info("[SYNC] Replaying %d held-back events", len(pending))
        for event, data in pending:
            try:
                if event == events.UPDATE_BID:
                    self._apply_bid(_payload(data, event), replay=True)
                else:
                    self._apply_end(_payload(data, event))
            except ProtocolError as e:
                self._dropped += 1
                log.warning("[SYNC] Dropped replayed %s: %s", event, e)

    def _hold(self, event: str, data: Any) -> bool:
        if not self._awaiting_snapshot:
            return False
        if len(self._pending) >= MAX_PENDING:
            log.warning("[SYNC] Held-back buffer full, dropping oldest")
            self._pending.pop(0)
        self._pending.append((event, data))
        return True

    def _cancel_snapshot_task(self) -> None:
        task, self._snapshot_task = self._snapshot_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── Server events ──

    def _on_initial_data(self, data: Any) -> None:
        data = _payload(data, events.INITIAL_DATA)
        items = data.get("items")
        if not isinstance(items, list):
            raise ProtocolError(f"items is not a list: {items!r}", events.INITIAL_DATA)
        # Parse everything before touching state: all or nothing.
        listings = [AuctionListing.from_dict(item, events.INITIAL_DATA) for item in items]
        server_time = data.get("serverTime")
        if server_time is not None:
            server_time = require_number(data, "serverTime", events.INITIAL_DATA)
        self._cancel_snapshot_task()
        self.apply_snapshot(listings, server_time)

    def _on_update_bid(self, data: Any) -> None:
        data = _payload(data, events.UPDATE_BID)
        if self._hold(events.UPDATE_BID, data):
            return
        self._apply_bid(data)

    def _apply_bid(self, data: dict, replay: bool = False) -> None:
        item_id = require_id(data, events.UPDATE_BID)
        bid = require_number(data, "currentBid", events.UPDATE_BID)
        bidder = optional_bidder(data, "highestBidder", events.UPDATE_BID)
        version = optional_version(data, events.UPDATE_BID)

        listing = self._listings.get(item_id)
        if listing is None:
            log.debug("[SYNC] Bid update for unknown listing %s", item_id)
            return
        if not listing.is_active:
            log.info("[SYNC] Bid update for ended listing %s ignored", item_id)
            return
        if version is not None and listing.version is not None and version <= listing.version:
            self._duplicates += 1
            log.info("[SYNC] Duplicate bid update for %s (v%d <= v%d)", item_id, version, listing.version)
            return
        if bid < listing.current_bid:
            self._dropped += 1
            log.warning("[SYNC] Stale bid update for %s: %s < %s", item_id, bid, listing.current_bid)
            return
        if replay and version is None and bid <= listing.current_bid:
            log.debug("[SYNC] Held-back bid for %s already in snapshot", item_id)
            return

        previous_bidder = listing.highest_bidder_id
        listing.current_bid = bid
        listing.highest_bidder_id = bidder
        listing.bid_count += 1
        if version is not None:
            listing.version = version
        self._applied += 1
        self._forget_outbids(item_id, below=bid)
        self.events.publish(events.LISTING, dataclasses.replace(listing))

        me = self.local_participant
        if me is None:
            return
        if bidder == me:
            self._notify.success("Your bid has been placed!")
        elif previous_bidder == me:
            self._notify_outbid(listing, item_id, bid)

    def _notify_outbid(self, listing: Optional[AuctionListing], item_id: ListingId, bid: Number) -> None:
        """Notify once per (listing, bid), whichever of UPDATE_BID / OUTBID comes first."""
        key = (item_id, bid)
        if key in self._outbid_seen:
            self._outbid_seen.discard(key)
            return
        self._outbid_seen.add(key)
        title = listing.title if listing is not None and listing.title else "an item"
        self._notify.outbid(f"You've been outbid on {title}! New bid: {money(bid)}")

    def _forget_outbids(self, item_id: ListingId, below: Optional[Number] = None) -> None:
        self._outbid_seen = {
            (i, b) for i, b in self._outbid_seen
            if i != item_id or (below is not None and b >= below)
        }

    def _on_bid_success(self, data: Any) -> None:
        log.info("[BID] Accepted: %s", str(data)[:200])

    def _on_bid_error(self, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        message = data.get("message") or "Bid rejected"
        self.last_rejection = SubmissionRejected(str(message))
        log.warning("[BID] Rejected: %s", message)
        self._notify.error(str(message))

    def _on_outbid(self, data: Any) -> None:
        data = _payload(data, events.OUTBID)
        item_id = require_id(data, events.OUTBID)
        bid = require_number(data, "currentBid", events.OUTBID)
        listing = self._listings.get(item_id)
        if listing is None:
            log.debug("[SYNC] Outbid for unknown listing %s", item_id)
            return
        self._notify_outbid(listing, item_id, bid)

    def _on_auction_ended(self, data: Any) -> None:
        data = _payload(data, events.AUCTION_ENDED)
        if self._hold(events.AUCTION_ENDED, data):
            return
        self._apply_end(data)

    def _apply_end(self, data: dict) -> None:
        item_id = require_id(data, events.AUCTION_ENDED)
        listing = self._listings.get(item_id)
        if listing is None:
            log.debug("[SYNC] End for unknown listing %s", item_id)
            return
        if not listing.is_active:
            return
        listing.is_active = False
        self._forget_outbids(item_id)
        log.info("[SYNC] Auction ended: %s (final %s, %d bids)",
                 item_id, money(listing.current_bid), listing.bid_count)
        self.events.publish(events.ENDED, dataclasses.replace(listing))

    def _on_time_sync(self, data: Any) -> None:
        data = _payload(data, events.TIME_SYNC)
        self._clock.apply(require_number(data, "serverTime", events.TIME_SYNC))

    # ── Lifecycle ──

    def _on_connect(self, lifecycle: Lifecycle) -> None:
        self._notify.success("Connected to auction server")
        self.begin_resync()

    def _on_connect_error(self, lifecycle: Lifecycle) -> None:
        # Retries report once up front; exhaustion is RECONNECT_FAILED.
        retrying = self._manager is not None and self._manager.auto_reconnect
        if not retrying:
            self._notify.error(f"Connection failed: {lifecycle.reason}")
        elif lifecycle.attempt == 0:
            self._notify.warning("Connection failed, retrying...")

    def _on_reconnect(self, lifecycle: Lifecycle) -> None:
        self._notify.success("Reconnected to server!")
        self.begin_resync()

    def _on_disconnect(self, lifecycle: Lifecycle) -> None:
        if lifecycle.manual:
            self._notify.info("Disconnected from server")
        else:
            self._notify.warning("Disconnected from server")

    def _on_reconnect_failed(self, lifecycle: Lifecycle) -> None:
        self._notify.error("Reconnection failed after all attempts")

    def _on_status(self, message: str) -> None:
        self._notify.info(str(message))

    def get_status(self) -> dict:
        return {
            "listings": len(self._listings),
            "active": sum(1 for l in self._listings.values() if l.is_active),
            "loaded": self._loaded,
            "degraded": self._degraded,
            "awaiting_snapshot": self._awaiting_snapshot,
            "pending": len(self._pending),
            "applied": self._applied,
            "dropped": self._dropped,
            "duplicates": self._duplicates,
        }

    def close(self) -> None:
        self.detach()
        self.events.clear()
