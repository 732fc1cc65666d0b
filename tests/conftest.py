"""Shared fakes: an in-memory websocket, a connector that hands them out,
and a manual clock."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import pytest

from gavel.config import GavelConfig


class FakeSocket:
    """Enough of a websockets connection for ConnectionManager."""

    def __init__(self, participant: Optional[str] = "me"):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False
        if participant is not None:
            self.push("SESSION", {"id": participant})

    def push(self, event: str, data: Any = None) -> None:
        frame = {"event": event}
        if data is not None:
            frame["data"] = data
        self.inbox.put_nowait(json.dumps(frame))

    def push_raw(self, raw: str) -> None:
        self.inbox.put_nowait(raw)

    def drop(self) -> None:
        """Server side goes away."""
        self.inbox.put_nowait(None)

    async def recv(self):
        raw = await self.inbox.get()
        if raw is None:
            raise OSError("connection closed")
        return raw

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self.inbox.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    async def send(self, frame: str) -> None:
        if self.closed:
            raise OSError("send on closed socket")
        self.sent.append(json.loads(frame))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(None)

    def sent_events(self, name: str) -> list[dict]:
        return [f for f in self.sent if f["event"] == name]


class FakeConnector:
    """Connector returning FakeSockets; can be told to refuse connections."""

    def __init__(self, participant: Optional[str] = "me", fail: int = 0, fail_always: bool = False):
        self.participant = participant
        self.fail = fail
        self.fail_always = fail_always
        self.calls = 0
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str, timeout: float) -> FakeSocket:
        self.calls += 1
        if self.fail_always or self.fail > 0:
            self.fail -= 1
            raise OSError("connection refused")
        sock = FakeSocket(self.participant)
        self.sockets.append(sock)
        return sock

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


class ManualClock:
    def __init__(self, value: float = 0.0):
        self.value = value

    def __call__(self) -> float:
        return self.value

    def advance(self, delta: float) -> None:
        self.value += delta


async def settle(rounds: int = 20) -> None:
    """Let every ready callback on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.005)
    return True


@pytest.fixture
def cfg() -> GavelConfig:
    return GavelConfig(
        socket_url="ws://test/ws",
        api_url="http://test",
        auto_reconnect=True,
        reconnect_attempts=3,
        reconnect_delay_s=0.01,
        connect_timeout_s=0.5,
        resync_interval_s=30.0,
        countdown_tick_s=0.01,
        bid_increment=10,
        bid_cooldown_s=1.0,
    )


def snapshot_item(item_id=1, current_bid=100, end_time=100_000, bid_count=0,
                  bidder=None, active=True, **extra) -> dict:
    item = {
        "id": item_id,
        "title": f"Item {item_id}",
        "description": "",
        "imageUrl": "",
        "startingPrice": 100,
        "currentBid": current_bid,
        "highestBidder": bidder,
        "bidCount": bid_count,
        "endTime": end_time,
        "isActive": active,
    }
    item.update(extra)
    return item
