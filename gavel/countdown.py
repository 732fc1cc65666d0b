"""Deadline countdowns driven by the synced clock.

``evaluate`` is pure. ``CountdownBoard`` runs one cooperative ticker per
listing and ties its lifetime to the listing: a ticker stops by itself at
expiry and is cancelled when its listing ends or leaves the collection.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable

from gavel import events
from gavel.events import EventBus
from gavel.models import AuctionListing, ListingId

if TYPE_CHECKING:
    from gavel.engine import AuctionEngine

log = logging.getLogger(__name__)

LAST_MINUTE_MS = 60_000
LAST_TEN_SECONDS_MS = 10_000


@dataclass(frozen=True)
class Countdown:
    remaining: float
    expired: bool
    last_minute: bool
    last_ten_seconds: bool

    @property
    def formatted(self) -> str:
        return format_remaining(self.remaining)


def evaluate(end_time: float, synced_now: float) -> Countdown:
    remaining = max(0, end_time - synced_now)
    return Countdown(
        remaining=remaining,
        expired=remaining <= 0,
        last_minute=0 < remaining <= LAST_MINUTE_MS,
        last_ten_seconds=0 < remaining <= LAST_TEN_SECONDS_MS,
    )


def format_remaining(remaining_ms: float) -> str:
    """``m:ss`` from whole seconds left."""
    total_seconds = int(max(0, remaining_ms) // 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}"


@dataclass(frozen=True)
class CountdownTick:
    listing_id: ListingId
    countdown: Countdown


class CountdownBoard:
    """Per-listing countdown tickers publishing ``COUNTDOWN`` on ``events``."""

    def __init__(self, now: Callable[[], float], tick_s: float = 0.1):
        self._now = now
        self._tick = tick_s
        self._end_times: dict[ListingId, float] = {}
        self._tasks: dict[ListingId, asyncio.Task] = {}
        self._latest: dict[ListingId, Countdown] = {}
        self._unsubscribers: list[Callable[[], None]] = []
        self.events = EventBus("countdown")

    # ── Engine wiring ──

    def attach(self, engine: AuctionEngine) -> None:
        self.detach()
        bus = engine.events
        self._unsubscribers = [
            bus.subscribe(events.LISTINGS, self._on_listings),
            bus.subscribe(events.LISTING, self._on_listing),
            bus.subscribe(events.ENDED, self._on_ended),
        ]
        self.track_all(engine.listings())

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_listings(self, listings: Iterable[AuctionListing]) -> None:
        self.track_all(listings)

    def _on_listing(self, listing: AuctionListing) -> None:
        if listing.is_active:
            self.track(listing.id, listing.end_time)

    def _on_ended(self, listing: AuctionListing) -> None:
        self.untrack(listing.id)

    # ── Tickers ──

    def track_all(self, listings: Iterable[AuctionListing]) -> None:
        """Make the tracked set match ``listings``; stale tickers are cancelled."""
        listings = list(listings)
        present = {l.id for l in listings}
        wanted = {l.id for l in listings if l.is_active}
        for listing_id in list(self._tasks):
            if listing_id not in wanted:
                self.untrack(listing_id)
        for listing_id in list(self._latest):
            if listing_id not in present:
                del self._latest[listing_id]
        for listing in listings:
            if listing.is_active:
                self.track(listing.id, listing.end_time)

    def track(self, listing_id: ListingId, end_time: float) -> None:
        task = self._tasks.get(listing_id)
        if task and not task.done() and self._end_times.get(listing_id) == end_time:
            return
        self.untrack(listing_id)
        self._end_times[listing_id] = end_time
        self._tasks[listing_id] = asyncio.create_task(self._run(listing_id, end_time))

    def untrack(self, listing_id: ListingId) -> None:
        task = self._tasks.pop(listing_id, None)
        if task and not task.done():
            task.cancel()
        self._end_times.pop(listing_id, None)

    def get(self, listing_id: ListingId) -> Countdown | None:
        return self._latest.get(listing_id)

    def evaluate(self, end_time: float) -> Countdown:
        return evaluate(end_time, self._now())

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def _run(self, listing_id: ListingId, end_time: float) -> None:
        try:
            while True:
                countdown = evaluate(end_time, self._now())
                self._latest[listing_id] = countdown
                self.events.publish(events.COUNTDOWN, CountdownTick(listing_id, countdown))
                if countdown.expired:
                    log.debug("[COUNTDOWN] Listing %s expired", listing_id)
                    return
                await asyncio.sleep(self._tick)
        except asyncio.CancelledError:
            pass

    def close(self) -> None:
        self.detach()
        for listing_id in list(self._tasks):
            self.untrack(listing_id)
        self._latest.clear()
