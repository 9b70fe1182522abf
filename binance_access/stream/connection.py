"""
Binance Stream Connection.

One WebSocket to a sub-market's combined stream endpoint:
- Connecting: open the socket
- Subscribing: one SUBSCRIBE listing every channel, wait for ack or first event
- Active: forward events, heartbeat on silence, track last activity
- Closing/Closed: requested shutdown
- Failed: socket error, unexpected close, stale socket

A connection runs one session per run_session() call and never
reconnects itself; the StreamManager supervisor decides when to retry.
"""

import asyncio
import itertools
import logging
import time
from enum import Enum, auto
from typing import Any, Callable, Iterable, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..api.errors import DecodeError
from ..config.settings import StreamConfig, SubMarket
from .events import (
    FrameKind,
    StreamEvent,
    classify_frame,
    control_message,
    decode_frame,
    split_event,
)

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Stream connection states."""
    CONNECTING = auto()
    SUBSCRIBING = auto()
    ACTIVE = auto()
    CLOSING = auto()
    CLOSED = auto()
    FAILED = auto()


class StreamConnectionError(Exception):
    """A stream session ended without being asked to."""
    pass


EventCallback = Callable[[StreamEvent], None]


class StreamConnection:
    """
    WebSocket session carrying a set of channels for one sub-market.

    Usage:
        conn = StreamConnection(url, SubMarket.SPOT, ["btcusdt@trade"], config, on_event)
        try:
            await conn.run_session()  # returns after close()
        except StreamConnectionError:
            ...  # caller decides whether to run another session
    """

    def __init__(
        self,
        url: str,
        sub_market: SubMarket,
        channels: Iterable[str],
        config: StreamConfig,
        on_event: EventCallback,
        connect: Callable[..., Any] = websockets.connect,
    ):
        """
        Initialize stream connection.

        Args:
            url: Combined stream endpoint
            sub_market: Sub-market the channels belong to
            channels: Initial channel set
            config: Stream configuration
            on_event: Synchronous sink for decoded events
            connect: WebSocket connect function
        """
        self._url = url
        self._sub_market = sub_market
        self._channels: Set[str] = set(channels)
        self._config = config
        self._on_event = on_event
        self._connect = connect

        self._state = ConnectionState.CLOSED
        self._ws = None
        self._ids = itertools.count(1)
        self._handshake_id: Optional[int] = None
        self._handshake_deadline = 0.0
        self._closing = asyncio.Event()

        self.last_activity: Optional[float] = None
        self.reconnect_attempts = 0
        self.reached_active = False
        self.sessions = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def sub_market(self) -> SubMarket:
        return self._sub_market

    @property
    def url(self) -> str:
        return self._url

    @property
    def channels(self) -> frozenset:
        return frozenset(self._channels)

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    @property
    def closing(self) -> bool:
        return self._closing.is_set()

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"Stream {self._sub_market.value} state: {self._state.name} -> {state.name}")
            self._state = state

    # ==========================================
    # SESSION
    # ==========================================

    async def run_session(self) -> None:
        """
        Run one socket session until closed or failed.

        Returns normally after close() or when no channels remain.

        Raises:
            StreamConnectionError: Session failed
        """
        if self._closing.is_set() or not self._channels:
            self._set_state(ConnectionState.CLOSED)
            return

        self.reached_active = False
        self.sessions += 1
        self._set_state(ConnectionState.CONNECTING)

        try:
            ws = await asyncio.wait_for(self._open(), timeout=self._config.connect_timeout)
        except asyncio.TimeoutError as e:
            self._set_state(ConnectionState.FAILED)
            raise StreamConnectionError(f"Timed out connecting to {self._url}") from e
        except (OSError, WebSocketException) as e:
            self._set_state(ConnectionState.FAILED)
            raise StreamConnectionError(f"Connect to {self._url} failed: {e}") from e

        self._ws = ws
        try:
            if self._closing.is_set():
                return
            await self._handshake(ws)
            await self._receive_loop(ws)

        except ConnectionClosed as e:
            if self._closing.is_set():
                return
            self._set_state(ConnectionState.FAILED)
            raise StreamConnectionError(f"Stream closed unexpectedly: {e}") from e

        except StreamConnectionError:
            self._set_state(ConnectionState.FAILED)
            raise

        except (OSError, WebSocketException) as e:
            self._set_state(ConnectionState.FAILED)
            raise StreamConnectionError(f"Stream error: {e}") from e

        finally:
            self._ws = None
            await self._close_socket(ws)
            if self._closing.is_set():
                self._set_state(ConnectionState.CLOSED)
                logger.info(f"Stream {self._sub_market.value} closed")

    async def _open(self):
        return await self._connect(
            self._url,
            ping_interval=None,  # We handle our own heartbeat
            close_timeout=self._config.close_timeout,
        )

    async def _handshake(self, ws) -> None:
        """Subscribe every channel in one request."""
        self._set_state(ConnectionState.SUBSCRIBING)
        channels = sorted(self._channels)
        self._handshake_id = next(self._ids)
        self._handshake_deadline = time.monotonic() + self._config.subscribe_timeout

        await ws.send(control_message("SUBSCRIBE", channels, self._handshake_id))
        logger.debug(f"Sent SUBSCRIBE for {len(channels)} channels on {self._url}")

    async def _receive_loop(self, ws) -> None:
        while True:
            if self._state == ConnectionState.SUBSCRIBING:
                timeout = max(0.0, self._handshake_deadline - time.monotonic())
            else:
                timeout = self._config.heartbeat_interval

            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
            except asyncio.TimeoutError:
                if self._state == ConnectionState.SUBSCRIBING:
                    raise StreamConnectionError(
                        f"No subscribe ack within {self._config.subscribe_timeout}s"
                    )
                await self._check_alive(ws)
                continue

            self.last_activity = time.monotonic()
            self._handle_frame(raw)

    async def _check_alive(self, ws) -> None:
        """Ping a silent socket; no pong means the socket is stale."""
        pong_waiter = await ws.ping()
        try:
            await asyncio.wait_for(pong_waiter, timeout=self._config.pong_timeout)
        except asyncio.TimeoutError:
            raise StreamConnectionError(f"No pong within {self._config.pong_timeout}s")
        self.last_activity = time.monotonic()

    def _handle_frame(self, raw) -> None:
        try:
            frame = decode_frame(raw)
        except DecodeError as e:
            logger.warning(f"Dropping stream frame: {e}")
            return

        kind = classify_frame(frame)

        if kind is FrameKind.ACK:
            if frame.get("id") == self._handshake_id and self._state == ConnectionState.SUBSCRIBING:
                self._activate()
            return

        if kind is FrameKind.ERROR:
            if frame.get("id") == self._handshake_id and self._state == ConnectionState.SUBSCRIBING:
                raise StreamConnectionError(f"Subscribe rejected: {frame.get('error')}")
            logger.error(f"Stream request {frame.get('id')} rejected: {frame.get('error')}")
            return

        default = next(iter(self._channels)) if len(self._channels) == 1 else None
        channel, data = split_event(frame, default)
        if channel is None:
            logger.warning("Dropping unattributed stream frame")
            return

        if self._state == ConnectionState.SUBSCRIBING:
            self._activate()

        self._on_event(StreamEvent(channel=channel, sub_market=self._sub_market, data=data))

    def _activate(self) -> None:
        self._set_state(ConnectionState.ACTIVE)
        self.reached_active = True
        self.reconnect_attempts = 0
        logger.info(f"Stream {self._sub_market.value} active with {len(self._channels)} channels")

    # ==========================================
    # CHANNEL CHANGES
    # ==========================================

    async def add_channels(self, channels: Iterable[str]) -> None:
        """Add channels; subscribed on the open socket if there is one."""
        new = sorted(c for c in set(channels) if c not in self._channels)
        if not new:
            return

        self._channels.update(new)
        await self._send_control("SUBSCRIBE", new)

    async def remove_channels(self, channels: Iterable[str]) -> None:
        """Remove channels; the caller closes the connection once empty."""
        gone = sorted(c for c in set(channels) if c in self._channels)
        if not gone:
            return

        self._channels.difference_update(gone)
        if self._channels:
            await self._send_control("UNSUBSCRIBE", gone)

    async def _send_control(self, method: str, channels) -> None:
        ws = self._ws
        if ws is None or self._state not in (ConnectionState.SUBSCRIBING, ConnectionState.ACTIVE):
            # Next handshake covers the current channel set
            return

        try:
            await ws.send(control_message(method, channels, next(self._ids)))
        except ConnectionClosed as e:
            logger.debug(f"{method} not sent, socket closed: {e}")

    # ==========================================
    # SHUTDOWN
    # ==========================================

    async def close(self) -> None:
        """Close the connection; a running session returns normally."""
        self._closing.set()

        ws = self._ws
        if ws is None:
            self._set_state(ConnectionState.CLOSED)
            return

        self._set_state(ConnectionState.CLOSING)
        await self._close_socket(ws)

    async def wait_closed(self, timeout: float) -> bool:
        """Wait up to timeout for close(); True if closing."""
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._closing.is_set()

    async def _close_socket(self, ws) -> None:
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.warning(f"Error closing WebSocket: {e}")

    def __repr__(self) -> str:
        return (
            f"StreamConnection({self._sub_market.value}, state={self._state.name}, "
            f"channels={len(self._channels)})"
        )
