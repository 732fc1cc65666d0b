import asyncio

from conftest import FakeConnector, ManualClock, snapshot_item
from gavel import events
from gavel.bidding import BidGuard
from gavel.channel import ConnectionManager
from gavel.clock import ClockSynchronizer
from gavel.engine import AuctionEngine
from gavel.notifications import NotificationKind, NotificationCenter


async def _setup(cfg, connect=True, end_time=1_000_000, **item):
    conn = FakeConnector()
    manager = ConnectionManager(cfg, connector=conn)
    clock = ClockSynchronizer(local_clock=ManualClock(0))
    notes = NotificationCenter(lifetime_s=60)
    engine = AuctionEngine(clock, notes)
    engine.attach(manager)
    engine.handle(events.INITIAL_DATA, {"items": [snapshot_item(1, end_time=end_time, **item)]})
    mono = ManualClock(100.0)
    guard = BidGuard(manager, engine, clock, notes,
                     increment=cfg.bid_increment, cooldown_s=cfg.bid_cooldown_s, monotonic=mono)
    if connect:
        await manager.connect()
        await manager.wait_connected(1.0)
    return guard, manager, conn, engine, notes, mono


def test_double_click_within_cooldown_sends_once(cfg):
    async def scenario():
        guard, manager, conn, _, _, mono = await _setup(cfg)
        assert await guard.submit_bid(1, 110) is True
        mono.advance(0.5)
        assert await guard.submit_bid(1, 110) is False
        assert conn.last.sent_events(events.BID_PLACED) == [
            {"event": "BID_PLACED", "data": {"itemId": 1, "bidAmount": 110}},
        ]
        await manager.close()

    asyncio.run(scenario())


def test_cooldown_lifts_after_window(cfg):
    async def scenario():
        guard, manager, conn, _, _, mono = await _setup(cfg)
        assert await guard.submit_bid(1)
        assert guard.is_cooling_down(1)
        mono.advance(cfg.bid_cooldown_s)
        assert not guard.is_cooling_down(1)
        assert await guard.submit_bid(1)
        assert len(conn.last.sent_events(events.BID_PLACED)) == 2
        await manager.close()

    asyncio.run(scenario())


def test_cooldown_is_per_listing(cfg):
    async def scenario():
        guard, manager, conn, engine, _, _ = await _setup(cfg)
        engine.handle(events.INITIAL_DATA, {"items": [
            snapshot_item(1, end_time=1_000_000), snapshot_item(2, end_time=1_000_000),
        ]})
        assert await guard.submit_bid(1)
        assert await guard.submit_bid(2)
        assert len(conn.last.sent_events(events.BID_PLACED)) == 2
        await manager.close()

    asyncio.run(scenario())


def test_not_connected_fails_fast_without_sending(cfg):
    async def scenario():
        guard, _, conn, _, notes, _ = await _setup(cfg, connect=False)
        assert await guard.submit_bid(1, 110) is False
        assert conn.calls == 0
        assert notes.history()[-1].kind is NotificationKind.ERROR
        assert notes.history()[-1].message == "Not connected to server"
        # a refused attempt does not start a cool-down
        assert not guard.is_cooling_down(1)

    asyncio.run(scenario())


def test_amount_must_be_current_plus_increment(cfg):
    async def scenario():
        guard, manager, conn, _, notes, _ = await _setup(cfg)
        assert guard.next_bid(1) == 110
        assert await guard.submit_bid(1, 150) is False
        assert conn.last.sent_events(events.BID_PLACED) == []
        assert notes.history()[-1].message == "Bid must be $110"
        assert not guard.is_cooling_down(1)
        assert await guard.submit_bid(1, 110) is True
        assert len(conn.last.sent_events(events.BID_PLACED)) == 1
        await manager.close()

    asyncio.run(scenario())


def test_expired_or_ended_listing_is_refused(cfg):
    async def scenario():
        guard, manager, conn, engine, _, _ = await _setup(cfg, end_time=-1)
        assert await guard.submit_bid(1) is False

        engine.handle(events.INITIAL_DATA, {"items": [snapshot_item(2, end_time=1_000_000, active=False)]})
        assert await guard.submit_bid(2) is False
        assert await guard.submit_bid(99) is False
        assert conn.last.sent_events(events.BID_PLACED) == []
        await manager.close()

    asyncio.run(scenario())


def test_no_optimistic_update(cfg):
    async def scenario():
        guard, manager, conn, engine, _, _ = await _setup(cfg)
        assert await guard.submit_bid(1)
        listing = engine.get(1)
        assert listing.current_bid == 100
        assert listing.bid_count == 0

        conn.last.push(events.UPDATE_BID, {"itemId": 1, "currentBid": 110, "highestBidder": "me"})
        for _ in range(20):
            await asyncio.sleep(0)
        assert engine.get(1).current_bid == 110
        await manager.close()

    asyncio.run(scenario())
