import asyncio

import pytest

from conftest import FakeConnector, settle, wait_for
from gavel import events
from gavel.channel import ConnectionManager, decode_frame, encode_frame
from gavel.errors import ProtocolError, TransportError
from gavel.models import ConnectionState


def _record(manager, *topics):
    seen = []
    for topic in topics:
        manager.events.subscribe(topic, lambda payload, t=topic: seen.append((t, payload)))
    return seen


def test_connect_reaches_connected_with_participant(cfg):
    async def scenario():
        conn = FakeConnector(participant="abc")
        manager = ConnectionManager(cfg, connector=conn)
        seen = _record(manager, events.CONNECT)
        await manager.connect()
        assert await manager.wait_connected(1.0)
        assert manager.state is ConnectionState.CONNECTED
        assert manager.participant_id == "abc"
        assert [t for t, _ in seen] == [events.CONNECT]
        await manager.close()

    asyncio.run(scenario())


def test_connect_twice_tears_down_first_channel(cfg):
    async def scenario():
        conn = FakeConnector()
        manager = ConnectionManager(cfg, connector=conn)
        await manager.connect()
        await manager.wait_connected(1.0)
        first = conn.last
        await manager.connect()
        await manager.wait_connected(1.0)
        assert conn.calls == 2
        assert first.closed
        assert not conn.last.closed
        await manager.close()

    asyncio.run(scenario())


def test_manual_disconnect_never_reconnects(cfg):
    async def scenario():
        conn = FakeConnector()
        manager = ConnectionManager(cfg, connector=conn)
        seen = _record(manager, events.DISCONNECT, events.RECONNECT_ATTEMPT)
        await manager.connect()
        await manager.wait_connected(1.0)
        assert manager.auto_reconnect

        await manager.disconnect()
        await asyncio.sleep(0.1)

        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.participant_id is None
        assert conn.calls == 1
        assert [t for t, _ in seen] == [events.DISCONNECT]
        assert seen[0][1].manual
        assert seen[0][1].reason == events.REASON_CLIENT

    asyncio.run(scenario())


def test_drop_without_auto_reconnect_goes_straight_to_disconnected(cfg):
    async def scenario():
        conn = FakeConnector()
        manager = ConnectionManager(cfg, connector=conn)
        states = []
        manager.events.subscribe(events.STATE, lambda lc: states.append(lc.state))
        attempts = _record(manager, events.RECONNECT_ATTEMPT)
        manager.set_auto_reconnect(False)
        await manager.connect()
        await manager.wait_connected(1.0)

        conn.last.drop()
        assert await wait_for(lambda: manager.state is ConnectionState.DISCONNECTED)
        await asyncio.sleep(0.05)

        assert conn.calls == 1
        assert attempts == []
        assert ConnectionState.RECONNECTING not in states

    asyncio.run(scenario())


def test_drop_with_auto_reconnect_recovers(cfg):
    async def scenario():
        conn = FakeConnector()
        manager = ConnectionManager(cfg, connector=conn)
        seen = _record(manager, events.DISCONNECT, events.RECONNECT_ATTEMPT, events.RECONNECT)
        await manager.connect()
        await manager.wait_connected(1.0)

        conn.last.drop()
        assert await wait_for(lambda: any(t == events.RECONNECT for t, _ in seen))

        assert manager.state is ConnectionState.CONNECTED
        assert conn.calls == 2
        topics = [t for t, _ in seen]
        assert topics == [events.DISCONNECT, events.RECONNECT_ATTEMPT, events.RECONNECT]
        assert seen[0][1].state is ConnectionState.RECONNECTING
        assert seen[2][1].attempt == 1
        await manager.close()

    asyncio.run(scenario())


def test_reconnect_attempts_are_bounded_then_failed(cfg):
    async def scenario():
        conn = FakeConnector(fail_always=True)
        manager = ConnectionManager(cfg, connector=conn)
        seen = _record(manager, events.RECONNECT_ATTEMPT, events.RECONNECT_FAILED)
        await manager.connect()
        assert await wait_for(lambda: manager.state is ConnectionState.FAILED)
        await asyncio.sleep(0.05)

        # first try plus reconnect_attempts retries
        assert conn.calls == cfg.reconnect_attempts + 1
        attempts = [p.attempt for t, p in seen if t == events.RECONNECT_ATTEMPT]
        assert attempts == [1, 2, 3]
        assert [t for t, _ in seen].count(events.RECONNECT_FAILED) == 1

    asyncio.run(scenario())


def test_failed_state_recovers_on_manual_reconnect(cfg):
    async def scenario():
        conn = FakeConnector(fail=cfg.reconnect_attempts + 1)
        manager = ConnectionManager(cfg, connector=conn)
        await manager.connect()
        assert await wait_for(lambda: manager.state is ConnectionState.FAILED)

        assert await manager.reconnect() is True
        assert await manager.wait_connected(1.0)
        await manager.close()

    asyncio.run(scenario())


def test_reconnect_while_connected_is_a_status_only_noop(cfg):
    async def scenario():
        conn = FakeConnector()
        manager = ConnectionManager(cfg, connector=conn)
        status = []
        manager.events.subscribe(events.STATUS, status.append)
        await manager.connect()
        await manager.wait_connected(1.0)

        assert await manager.reconnect() is False
        assert conn.calls == 1
        assert status == ["Already connected to server"]
        await manager.close()

    asyncio.run(scenario())


def test_toggling_auto_reconnect_keeps_channel_alive(cfg):
    async def scenario():
        conn = FakeConnector()
        manager = ConnectionManager(cfg, connector=conn)
        await manager.connect()
        await manager.wait_connected(1.0)

        manager.set_auto_reconnect(False)
        manager.set_auto_reconnect(True)
        await settle()
        assert manager.state is ConnectionState.CONNECTED
        assert conn.calls == 1
        await manager.close()

    asyncio.run(scenario())


def test_emit_requires_connection(cfg):
    async def scenario():
        manager = ConnectionManager(cfg, connector=FakeConnector())
        with pytest.raises(TransportError):
            await manager.emit(events.REQUEST_SYNC)

    asyncio.run(scenario())


def test_emit_sends_json_frame(cfg):
    async def scenario():
        conn = FakeConnector()
        manager = ConnectionManager(cfg, connector=conn)
        await manager.connect()
        await manager.wait_connected(1.0)
        await manager.emit(events.BID_PLACED, {"itemId": 1, "bidAmount": 110})
        assert conn.last.sent == [{"event": "BID_PLACED", "data": {"itemId": 1, "bidAmount": 110}}]
        await manager.close()

    asyncio.run(scenario())


def test_malformed_frames_are_dropped_without_breaking_the_channel(cfg):
    async def scenario():
        conn = FakeConnector()
        manager = ConnectionManager(cfg, connector=conn)
        received = []
        manager.events.subscribe(events.TIME_SYNC, received.append)
        await manager.connect()
        await manager.wait_connected(1.0)

        conn.last.push_raw("not json")
        conn.last.push_raw('["list", "frame"]')
        conn.last.push(events.TIME_SYNC, {"serverTime": 42})
        assert await wait_for(lambda: received)

        assert received == [{"serverTime": 42}]
        assert manager.state is ConnectionState.CONNECTED
        assert manager.get_status()["frames_dropped"] == 2
        await manager.close()

    asyncio.run(scenario())


def test_missing_session_frame_is_a_connect_error(cfg):
    async def scenario():
        conn = FakeConnector(participant=None)
        manager = ConnectionManager(cfg, connector=conn)
        manager.set_auto_reconnect(False)
        errors = []
        manager.events.subscribe(events.CONNECT_ERROR, errors.append)
        await manager.connect()
        assert await wait_for(lambda: errors, timeout=2.0)
        assert await wait_for(lambda: manager.state is ConnectionState.DISCONNECTED)
        assert conn.calls == 1

    asyncio.run(scenario())


def test_frame_codec():
    assert decode_frame(encode_frame("REQUEST_SYNC")) == ("REQUEST_SYNC", {})
    assert decode_frame(b'{"event": "OUTBID", "data": {"itemId": 2}}') == ("OUTBID", {"itemId": 2})
    with pytest.raises(ProtocolError):
        decode_frame('{"data": {}}')
