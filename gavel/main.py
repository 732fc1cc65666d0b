"""GavelClient — async orchestrator: channel, clock, engine, countdowns, console.

The console is the presentation layer: it prints notifications as they
arrive, a listing table on every status tick, and accepts line commands on
stdin (``help`` lists them).
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading
from typing import Optional

from gavel.api import AuctionAPI
from gavel.bidding import BidGuard
from gavel.channel import ConnectionManager, Connector
from gavel.clock import ClockSynchronizer
from gavel.config import GavelConfig
from gavel.countdown import CountdownBoard
from gavel.engine import AuctionEngine, money
from gavel.errors import SnapshotLoadError
from gavel.models import ListingId
from gavel.notifications import Notification, NotificationCenter

log = logging.getLogger(__name__)

BANNER = """
=== GAVEL — Live Auction Client ===
Channel: {socket_url} | API: {api_url}
Auto-reconnect: {auto} ({attempts} x {delay}s) | Bid step: {increment} | Cool-down: {cooldown}s
"""

HELP = """Commands:
  list                 show listings
  bid <id> [amount]    place the next bid (amount must be current + step)
  disconnect           drop the channel (no auto-reconnect)
  reconnect            reconnect if not connected
  auto on|off          toggle auto-reconnect
  reload               re-fetch the listing snapshot
  reset <id>           restart an auction (demo servers only)
  health               query the API health endpoint
  status               connection / clock / engine diagnostics
  quit                 exit"""


def parse_listing_id(token: str) -> ListingId:
    return int(token) if token.lstrip("-").isdigit() else token


class GavelClient:
    """Wires the sync components together; every dependency is explicit."""

    def __init__(
        self,
        cfg: Optional[GavelConfig] = None,
        api: Optional[AuctionAPI] = None,
        connector: Optional[Connector] = None,
    ):
        self.cfg = cfg or GavelConfig()
        self.api = api or AuctionAPI(self.cfg)
        self.notifications = NotificationCenter(lifetime_s=self.cfg.notification_ttl_s)
        self.channel = ConnectionManager(self.cfg, connector=connector)
        self.clock = ClockSynchronizer(resync_interval_s=self.cfg.resync_interval_s)
        self.engine = AuctionEngine(self.clock, self.notifications, loader=self.api.fetch_snapshot)
        self.countdowns = CountdownBoard(self.clock.now, tick_s=self.cfg.countdown_tick_s)
        self.bids = BidGuard(
            self.channel, self.engine, self.clock, self.notifications,
            increment=self.cfg.bid_increment,
            cooldown_s=self.cfg.bid_cooldown_s,
        )
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._unsubscribe_notes = None

    async def start(self) -> None:
        """Attach components, load the first snapshot and open the channel."""
        self.clock.attach(self.channel)
        self.engine.attach(self.channel)
        self.countdowns.attach(self.engine)
        self._unsubscribe_notes = self.notifications.subscribe(self._print_notification)

        log.info("Loading auctions...")
        if await self.engine.load_snapshot():
            log.info("Loaded %d listings", len(self.engine.listings()))
        await self.channel.connect()
        self._running = True

    async def run(self, console: bool = True) -> None:
        """Main entry point: start, loop until quit or signal, stop."""
        self._setup_logging()
        print(BANNER.format(
            socket_url=self.cfg.socket_url,
            api_url=self.cfg.api_url,
            auto="ON" if self.cfg.auto_reconnect else "OFF",
            attempts=self.cfg.reconnect_attempts,
            delay=self.cfg.reconnect_delay_s,
            increment=self.cfg.bid_increment,
            cooldown=self.cfg.bid_cooldown_s,
        ))

        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))
            except NotImplementedError:
                pass

        self._tasks = [asyncio.create_task(self._status_loop())]
        if console:
            self._tasks.append(asyncio.create_task(self._console_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass
        await self.stop()
        log.info("Gavel stopped.")

    async def stop(self) -> None:
        """Cancel every task and timer this client started."""
        if not self._running:
            return
        log.info("Shutting down Gavel...")
        self._running = False
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self.countdowns.close()
        self.clock.detach()
        self.engine.close()
        await self.channel.close()
        if self._unsubscribe_notes:
            self._unsubscribe_notes()
            self._unsubscribe_notes = None

    # ── Commands ──

    async def execute(self, line: str) -> str:
        """Run one console command and return its output."""
        parts = line.split()
        if not parts:
            return ""
        cmd, args = parts[0].lower(), parts[1:]

        if cmd in ("help", "?"):
            return HELP
        if cmd == "list":
            return self.render_listings()
        if cmd == "bid":
            if not args or len(args) > 2:
                return "usage: bid <id> [amount]"
            listing_id = parse_listing_id(args[0])
            amount = None
            if len(args) == 2:
                try:
                    amount = float(args[1]) if "." in args[1] else int(args[1])
                except ValueError:
                    return f"invalid amount: {args[1]}"
            sent = await self.bids.submit_bid(listing_id, amount)
            return "bid sent" if sent else "bid not sent"
        if cmd == "disconnect":
            await self.channel.disconnect()
            return "disconnected"
        if cmd == "reconnect":
            started = await self.channel.reconnect()
            return "reconnecting" if started else "already connected"
        if cmd == "auto":
            if not args or args[0].lower() not in ("on", "off"):
                return "usage: auto on|off"
            self.channel.set_auto_reconnect(args[0].lower() == "on")
            return f"auto-reconnect {'ON' if self.channel.auto_reconnect else 'OFF'}"
        if cmd == "reload":
            ok = await self.engine.load_snapshot()
            return f"loaded {len(self.engine.listings())} listings" if ok else "reload failed"
        if cmd == "reset":
            if len(args) != 1:
                return "usage: reset <id>"
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self.api.reset_item, parse_listing_id(args[0]))
            except SnapshotLoadError as e:
                return f"reset failed: {e.msg}"
            return "reset requested"
        if cmd == "health":
            loop = asyncio.get_running_loop()
            try:
                body = await loop.run_in_executor(None, self.api.health)
            except SnapshotLoadError as e:
                return f"unhealthy: {e.msg}"
            return f"healthy: {body}"
        if cmd == "status":
            return self.render_status()
        if cmd in ("quit", "exit"):
            await self.stop()
            return "bye"
        return f"unknown command: {cmd} (try 'help')"

    # ── Presentation ──

    def render_listings(self) -> str:
        listings = self.engine.listings()
        if not listings:
            if self.engine.degraded:
                return "No auctions (snapshot failed, try 'reload')."
            return "No auctions available at the moment."
        me = self.engine.local_participant
        lines = []
        for listing in listings:
            countdown = self.countdowns.evaluate(listing.end_time)
            if not listing.is_active or countdown.expired:
                clock = "ENDED"
            elif countdown.last_ten_seconds:
                clock = f"{countdown.formatted} !!"
            elif countdown.last_minute:
                clock = f"{countdown.formatted} !"
            else:
                clock = countdown.formatted
            flag = " (you)" if me and listing.highest_bidder_id == me else ""
            lines.append(
                f"[{listing.id}] {listing.title[:30]:<30} {money(listing.current_bid):>10} "
                f"{listing.bid_count:>3} bids  {clock:>9}{flag}"
            )
        return "\n".join(lines)

    def render_status(self) -> str:
        ch = self.channel.get_status()
        ck = self.clock.get_status()
        en = self.engine.get_status()
        return (
            f"channel={ch['state']} id={ch['participant_id']} auto={ch['auto_reconnect']} "
            f"reconnects={ch['reconnect_count']} events={ch['events_received']}\n"
            f"clock offset={ck['offset_ms']}ms rtt={ck['last_rtt_ms']} syncs={ck['syncs']}\n"
            f"engine listings={en['listings']} active={en['active']} degraded={en['degraded']} "
            f"dropped={en['dropped']} duplicates={en['duplicates']}"
        )

    def _print_notification(self, note: Notification) -> None:
        print(f"[{note.kind.value.upper()}] {note.message}")

    async def _status_loop(self) -> None:
        """Log a one-line status every status_interval_s."""
        while self._running:
            try:
                await asyncio.sleep(self.cfg.status_interval_s)
                if not self._running:
                    break
                en = self.engine.get_status()
                log.info(
                    "STATUS: ws=%s | listings=%d active=%d | offset=%.0fms | countdowns=%d",
                    self.channel.state.value, en["listings"], en["active"],
                    self.clock.offset, self.countdowns.active_count,
                )
            except asyncio.CancelledError:
                return
            except Exception:
                log.exception("Status loop error")

    async def _console_loop(self) -> None:
        """Read stdin on a daemon thread; lines are handed to the loop via a queue."""
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue[str] = asyncio.Queue()

        def _reader() -> None:
            try:
                for raw in sys.stdin:
                    loop.call_soon_threadsafe(lines.put_nowait, raw)
                loop.call_soon_threadsafe(lines.put_nowait, "")  # EOF
            except RuntimeError:
                pass  # Loop closed

        threading.Thread(target=_reader, daemon=True, name="gavel-console").start()
        print(HELP)
        while self._running:
            try:
                line = await lines.get()
                if not line:
                    await self.stop()
                    return
                output = await self.execute(line.strip())
                if output:
                    print(output)
            except asyncio.CancelledError:
                return
            except Exception:
                log.exception("Console error")

    def _setup_logging(self) -> None:
        logging.basicConfig(
            level=getattr(logging, self.cfg.log_level.upper(), logging.INFO),
            format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        # Quiet noisy libs
        for lib in ("websockets", "urllib3", "requests"):
            logging.getLogger(lib).setLevel(logging.WARNING)
