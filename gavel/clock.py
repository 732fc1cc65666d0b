"""Server clock synchronisation.

offset = serverTime - localTimeAtReply, measured in one round trip. Latency is
not compensated: the error is bounded by the RTT, which is logged on every
reply so it can be watched.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable, Optional

from gavel import events
from gavel.errors import TransportError

if TYPE_CHECKING:
    from gavel.channel import ConnectionManager

log = logging.getLogger(__name__)


def _wall_ms() -> float:
    return time.time() * 1000.0


class ClockSynchronizer:
    """Owns the clock offset. ``now()`` is the only time source for deadlines."""

    def __init__(
        self,
        resync_interval_s: float = 30.0,
        local_clock: Callable[[], float] = _wall_ms,
    ):
        self._interval = resync_interval_s
        self._local = local_clock
        self._offset: float = 0.0
        self._synced = False
        self._last_sync_at: float = 0.0
        self._requested_at: Optional[float] = None
        self._last_rtt: Optional[float] = None
        self._sync_count = 0

        self._manager: Optional[ConnectionManager] = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._resync_task: Optional[asyncio.Task] = None

    # ── Offset ──

    @property
    def offset(self) -> float:
        return self._offset

    @property
    def synced(self) -> bool:
        return self._synced

    @property
    def last_rtt(self) -> Optional[float]:
        return self._last_rtt

    def now(self) -> float:
        """Synced now, in ms."""
        return self._local() + self._offset

    def apply(self, server_time: float, local_time: Optional[float] = None) -> float:
        """Replace the offset from a server timestamp observed at ``local_time``."""
        t1 = self._local() if local_time is None else local_time
        self._offset = server_time - t1
        self._synced = True
        self._last_sync_at = t1
        self._sync_count += 1
        if self._requested_at is not None:
            self._last_rtt = max(0.0, t1 - self._requested_at)
            self._requested_at = None
            log.debug("[SYNC] offset=%.0fms rtt=%.0fms", self._offset, self._last_rtt)
        else:
            log.debug("[SYNC] offset=%.0fms (unsolicited)", self._offset)
        return self._offset

    def reset(self) -> None:
        self._offset = 0.0
        self._synced = False
        self._requested_at = None

    # ── Channel wiring ──

    def attach(self, manager: ConnectionManager) -> None:
        """Follow the manager's lifecycle: sync on connect, stop on drop."""
        self.detach()
        self._manager = manager
        bus = manager.events
        self._unsubscribers = [
            bus.subscribe(events.CONNECT, self._on_connected),
            bus.subscribe(events.RECONNECT, self._on_connected),
            bus.subscribe(events.DISCONNECT, self._on_lost),
            bus.subscribe(events.RECONNECT_FAILED, self._on_lost),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.stop_resync()
        self._manager = None

    async def request(self) -> bool:
        """Ask the server for its time. The reply arrives as TIME_SYNC."""
        if self._manager is None or not self._manager.connected:
            return False
        self._requested_at = self._local()
        try:
            await self._manager.emit(events.REQUEST_SYNC)
        except TransportError as e:
            self._requested_at = None
            log.warning("[SYNC] Request failed: %s", e)
            return False
        return True

    def start_resync(self) -> None:
        if self._resync_task and not self._resync_task.done():
            return
        self._resync_task = asyncio.create_task(self._resync_loop())

    def stop_resync(self) -> None:
        if self._resync_task and not self._resync_task.done():
            self._resync_task.cancel()
        self._resync_task = None

    @property
    def resyncing(self) -> bool:
        return self._resync_task is not None and not self._resync_task.done()

    async def _resync_loop(self) -> None:
        """Request now, then every interval, for as long as the channel is up."""
        try:
            while self._manager is not None and self._manager.connected:
                await self.request()
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            pass

    def _on_connected(self, _payload) -> None:
        self.stop_resync()
        self.start_resync()

    def _on_lost(self, _payload) -> None:
        self.stop_resync()

    def get_status(self) -> dict:
        return {
            "synced": self._synced,
            "offset_ms": round(self._offset, 1),
            "last_rtt_ms": round(self._last_rtt, 1) if self._last_rtt is not None else None,
            "syncs": self._sync_count,
            "resync_running": self.resyncing,
        }
