"""Auction channel — one websocket, owned and supervised.

Frames are JSON text: ``{"event": NAME, "data": {...}}``. After the socket
opens the server sends ``SESSION{id}`` with our participant id; only then is
the channel CONNECTED.

State machine:
  DISCONNECTED -> CONNECTING -> CONNECTED
  CONNECTED --drop, auto on--> RECONNECTING --(fixed delay, N attempts)--> CONNECTED | FAILED
  CONNECTED --drop, auto off--> DISCONNECTED
  any --disconnect()--> DISCONNECTED   (never reconnects by itself)

Every transition is published on ``events`` (STATE plus the matching
lifecycle signal) so the engine and clock can follow along.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from gavel import events
from gavel.config import GavelConfig
from gavel.errors import ProtocolError, TransportError
from gavel.events import EventBus, Lifecycle
from gavel.models import ConnectionState

log = logging.getLogger(__name__)

Connector = Callable[[str, float], Awaitable[Any]]


def _open_websocket(url: str, timeout: float) -> Awaitable[Any]:
    return websockets.connect(
        url,
        open_timeout=timeout,
        ping_interval=20,
        ping_timeout=20,
        close_timeout=5,
    )


def encode_frame(event: str, data: Any = None) -> str:
    frame: dict[str, Any] = {"event": event}
    if data is not None:
        frame["data"] = data
    return json.dumps(frame)


def decode_frame(raw: Any) -> tuple[str, Any]:
    """Parse one text frame into ``(event, data)``. Raises ProtocolError."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"undecodable frame: {e}") from e
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolError(f"invalid JSON: {str(raw)[:80]!r}") from e
    if not isinstance(frame, dict):
        raise ProtocolError(f"frame is not an object: {str(raw)[:80]!r}")
    event = frame.get("event")
    if not isinstance(event, str) or not event:
        raise ProtocolError(f"frame without event name: {str(raw)[:80]!r}")
    data = frame.get("data")
    return event, {} if data is None else data


class ConnectionManager:
    """Owns the single bidirectional channel and its reconnect policy."""

    def __init__(self, cfg: GavelConfig, connector: Optional[Connector] = None):
        self._cfg = cfg
        self._url = cfg.socket_url
        self._connector = connector or _open_websocket
        self.events = EventBus("channel")

        self._state = ConnectionState.DISCONNECTED
        self._auto_reconnect = cfg.auto_reconnect
        self._participant_id: Optional[str] = None
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._connected_evt = asyncio.Event()

        # Reconnect bookkeeping
        self._attempt = 0
        self._reconnect_count = 0

        # Health
        self._connected_at: float = 0.0
        self._events_received = 0
        self._frames_dropped = 0

    # ── Properties ──

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._ws is not None

    @property
    def auto_reconnect(self) -> bool:
        return self._auto_reconnect

    @property
    def participant_id(self) -> Optional[str]:
        return self._participant_id

    @property
    def attempt(self) -> int:
        """Current reconnect attempt number (0 when not reconnecting)."""
        return self._attempt

    # ── User actions ──

    async def connect(self) -> None:
        """Open the channel, tearing down any existing one first."""
        if self._task is not None or self._ws is not None:
            log.info("[WS] Tearing down existing channel before connect")
            await self._teardown()
        self._attempt = 0
        self._participant_id = None
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Manual disconnect. Bypasses the reconnect policy entirely."""
        had_channel = self._task is not None or self._ws is not None
        log.info("[WS] Manually disconnecting")
        await self._teardown()
        self._participant_id = None
        self._attempt = 0
        if had_channel or self._state is not ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
            self.events.publish(events.DISCONNECT, Lifecycle(
                state=self._state, reason=events.REASON_CLIENT, manual=True,
            ))

    async def reconnect(self) -> bool:
        """Reconnect unless already connected. Returns True if a connect was started."""
        if self._state is ConnectionState.CONNECTED:
            log.info("[WS] Reconnect requested while connected, nothing to do")
            self.events.publish(events.STATUS, "Already connected to server")
            return False
        log.info("[WS] Manually reconnecting")
        await self.connect()
        return True

    def set_auto_reconnect(self, enabled: bool) -> None:
        """Change the policy; the live channel is not touched."""
        self._auto_reconnect = bool(enabled)
        log.info("[WS] Auto-reconnect %s", "enabled" if enabled else "disabled")
        self.events.publish(
            events.STATUS, f"Auto-reconnect {'enabled' if enabled else 'disabled'}",
        )

    async def emit(self, event: str, data: Any = None) -> None:
        """Send one frame. Raises TransportError when the channel is not up."""
        ws = self._ws
        if ws is None or self._state is not ConnectionState.CONNECTED:
            raise TransportError("Socket not connected", self._url)
        try:
            await ws.send(encode_frame(event, data))
        except ConnectionClosed as e:
            raise TransportError(f"send failed, channel closed: {e}", self._url) from e
        except Exception as e:
            raise TransportError(f"send failed: {str(e)[:120]}", self._url) from e

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._connected_evt.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        """Tear down without publishing anything (process shutdown)."""
        await self._teardown()
        self._participant_id = None
        self._state = ConnectionState.DISCONNECTED
        self._connected_evt.clear()

    # ── Supervisor ──

    async def _run(self) -> None:
        """Connect, read until the channel drops, then apply the reconnect policy."""
        while True:
            try:
                reason = await self._session()
            except TransportError as e:
                log.warning("[WS] Connect failed (attempt %d): %s", self._attempt, e)
                self.events.publish(events.CONNECT_ERROR, Lifecycle(
                    state=self._state, reason=str(e), attempt=self._attempt,
                ))
                await self._close_ws()
                self._participant_id = None
            else:
                await self._close_ws()
                self._participant_id = None
                self._attempt = 0
                log.warning("[WS] Channel dropped: %s", reason)
                next_state = (
                    ConnectionState.RECONNECTING if self._auto_reconnect
                    else ConnectionState.DISCONNECTED
                )
                self._set_state(next_state)
                self.events.publish(events.DISCONNECT, Lifecycle(state=next_state, reason=reason))

            if not self._auto_reconnect:
                self._set_state(ConnectionState.DISCONNECTED)
                self._task = None
                return

            self._attempt += 1
            if self._attempt > self._cfg.reconnect_attempts:
                log.error("[WS] Reconnection failed after %d attempts", self._cfg.reconnect_attempts)
                self._attempt = 0
                self._set_state(ConnectionState.FAILED)
                self.events.publish(events.RECONNECT_FAILED, Lifecycle(
                    state=ConnectionState.FAILED, attempt=self._cfg.reconnect_attempts,
                ))
                self._task = None
                return

            self._set_state(ConnectionState.RECONNECTING)
            log.info("[WS] Reconnection attempt %d/%d in %.1fs",
                     self._attempt, self._cfg.reconnect_attempts, self._cfg.reconnect_delay_s)
            self.events.publish(events.RECONNECT_ATTEMPT, Lifecycle(
                state=ConnectionState.RECONNECTING, attempt=self._attempt,
            ))
            await asyncio.sleep(self._cfg.reconnect_delay_s)
            if not self._auto_reconnect:
                log.info("[WS] Auto-reconnect switched off while waiting, giving up")
                self._attempt = 0
                self._set_state(ConnectionState.DISCONNECTED)
                self._task = None
                return

    async def _session(self) -> str:
        """One connection lifetime. Returns the drop reason once connected;
        raises TransportError if the channel never got to CONNECTED."""
        timeout = self._cfg.connect_timeout_s
        log.info("[WS] Connecting to %s", self._url)
        try:
            self._ws = await asyncio.wait_for(self._connector(self._url, timeout), timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"connect timed out after {timeout:.0f}s", self._url) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TransportError(f"connect failed: {str(e)[:120]}", self._url) from e

        try:
            participant_id, early = await asyncio.wait_for(self._handshake(self._ws), timeout)
        except asyncio.TimeoutError as e:
            raise TransportError("no SESSION frame from server", self._url) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TransportError(f"handshake failed: {str(e)[:120]}", self._url) from e

        self._participant_id = participant_id
        self._connected_at = time.time()
        attempt = self._attempt
        self._set_state(ConnectionState.CONNECTED)
        if attempt > 0:
            self._reconnect_count += 1
            log.info("[WS] Reconnected after %d attempt(s) as %s", attempt, participant_id)
            self.events.publish(events.RECONNECT, Lifecycle(
                state=self._state, attempt=attempt, participant_id=participant_id,
            ))
        else:
            log.info("[WS] Connected as %s", participant_id)
            self.events.publish(events.CONNECT, Lifecycle(
                state=self._state, participant_id=participant_id,
            ))
        self._attempt = 0

        for raw in early:
            self._dispatch(raw)
        return await self._read_loop(self._ws)

    async def _handshake(self, ws) -> tuple[str, list]:
        """Wait for SESSION; frames that arrive before it are kept for later."""
        early: list = []
        while True:
            raw = await ws.recv()
            try:
                event, data = decode_frame(raw)
            except ProtocolError as e:
                log.warning("[WS] Dropped frame during handshake: %s", e)
                continue
            if event != events.SESSION:
                early.append(raw)
                continue
            participant_id = data.get("id") if isinstance(data, dict) else None
            if not isinstance(participant_id, str) or not participant_id:
                raise ProtocolError(f"SESSION without id: {data!r}", events.SESSION)
            return participant_id, early

    async def _read_loop(self, ws) -> str:
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            return f"{events.REASON_TRANSPORT}: {e}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return f"{events.REASON_TRANSPORT}: {str(e)[:120]}"
        return events.REASON_SERVER

    def _dispatch(self, raw: Any) -> None:
        try:
            event, data = decode_frame(raw)
        except ProtocolError as e:
            self._frames_dropped += 1
            log.warning("[WS] Dropped frame: %s", e)
            return
        self._events_received += 1
        self.events.publish(event, data)

    # ── Teardown ──

    async def _teardown(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_ws()

    async def _close_ws(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            log.debug("[WS] Close error: %s", str(e)[:100])

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if new is old:
            return
        self._state = new
        if new is ConnectionState.CONNECTED:
            self._connected_evt.set()
        else:
            self._connected_evt.clear()
        log.debug("[WS] %s -> %s", old.value, new.value)
        self.events.publish(events.STATE, Lifecycle(
            state=new, attempt=self._attempt, participant_id=self._participant_id,
        ))

    # ── Status ──

    def get_status(self) -> dict:
        """Status dict for the console viewer."""
        return {
            "state": self._state.value,
            "participant_id": self._participant_id,
            "auto_reconnect": self._auto_reconnect,
            "attempt": self._attempt,
            "reconnect_count": self._reconnect_count,
            "events_received": self._events_received,
            "frames_dropped": self._frames_dropped,
            "uptime_s": round(time.time() - self._connected_at, 0)
            if self._connected_at and self._state is ConnectionState.CONNECTED else 0,
        }
