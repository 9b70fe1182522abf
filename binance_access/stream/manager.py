"""
Binance Stream Manager.

Multiplexes channel subscriptions from many consumers over as few
WebSocket connections as possible:
- a channel maps to at most one connection per sub-market
- subscriptions requested within batch_window share one handshake
- each connection has a supervisor task that reconnects it with
  exponential backoff and re-subscribes its channels
- each consumer has its own bounded backlog; a slow consumer never
  blocks the socket or other consumers

Events lost while a connection is down are not replayed.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import websockets

from ..api.errors import ConfigError, StreamFailure
from ..config.settings import ApiConfig, StreamConfig, SubMarket
from .connection import ConnectionState, StreamConnection, StreamConnectionError
from .events import StreamEvent

logger = logging.getLogger(__name__)

ChannelKey = Tuple[SubMarket, str]
Consumer = Callable[[StreamEvent], Awaitable[None]]
ErrorHandler = Callable[[StreamFailure], Awaitable[None]]

_WAKE = object()


class SubscriptionHandle:
    """
    One consumer's subscription to a channel.

    Iterate to receive events:
        async for event in handle:
            process(event)

    Iteration ends after unsubscribe() or manager close, and raises
    StreamFailure if the manager gave up reconnecting.
    """

    def __init__(
        self,
        channel: str,
        sub_market: SubMarket,
        queue_size: int,
        consumer: Optional[Consumer] = None,
        on_error: Optional[ErrorHandler] = None,
    ):
        self.channel = channel
        self.sub_market = sub_market
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._consumer = consumer
        self._on_error = on_error
        self._terminal: Optional[BaseException] = None
        self._delivery_task: Optional[asyncio.Task] = None

    @property
    def key(self) -> ChannelKey:
        return (self.sub_market, self.channel)

    @property
    def active(self) -> bool:
        return self._terminal is None

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def _offer(self, event: StreamEvent) -> None:
        """Queue an event without blocking; overflow drops it."""
        if self._terminal is not None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(
                    f"Consumer backlog full on {self.channel}, "
                    f"{self.dropped} events dropped"
                )

    def _finish(self, terminal: Optional[BaseException] = None) -> None:
        if self._terminal is not None:
            return
        self._terminal = terminal or StopAsyncIteration()
        try:
            self._queue.put_nowait(_WAKE)
        except asyncio.QueueFull:
            pass  # Consumer sees the terminal once the backlog drains

    async def _fail(self, failure: StreamFailure) -> None:
        if self._terminal is not None:
            return
        self._finish(failure)
        if self._on_error:
            try:
                await self._on_error(failure)
            except Exception:
                logger.exception(f"Error callback failed for {self.channel}")

    def _start_delivery(self) -> None:
        if self._consumer is not None:
            self._delivery_task = asyncio.create_task(self._deliver())

    async def _deliver(self) -> None:
        """Feed queued events to the callback consumer in order."""
        try:
            async for event in self:
                try:
                    await self._consumer(event)
                except Exception:
                    logger.exception(f"Consumer callback failed for {self.channel}")
        except StreamFailure:
            pass  # Reported through on_error

    async def _stop_delivery(self) -> None:
        task = self._delivery_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamEvent:
        if self._terminal is not None and self._queue.empty():
            raise self._terminal

        item = await self._queue.get()
        if item is _WAKE:
            raise self._terminal
        return item

    def __repr__(self) -> str:
        return f"SubscriptionHandle({self.sub_market.value}:{self.channel}, active={self.active})"


class StreamManager:
    """
    Subscription multiplexer over Binance combined streams.

    Usage:
        async with StreamManager() as manager:
            handle = await manager.subscribe("btcusdt@trade")
            async for event in handle:
                print(event.data)

    Or with callbacks:
        handle = await manager.subscribe(
            "btcusdt@depth",
            consumer=handle_depth,
            on_error=handle_failure,
        )
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        api_config: Optional[ApiConfig] = None,
        connect: Callable = websockets.connect,
    ):
        """
        Initialize stream manager.

        Args:
            config: Stream configuration
            api_config: Endpoint configuration (stream URLs, enabled sub-markets)
            connect: WebSocket connect function
        """
        self._config = config or StreamConfig()
        self._api_config = api_config or ApiConfig()
        self._connect = connect

        self._lock: Optional[asyncio.Lock] = None
        self._consumers: Dict[ChannelKey, List[SubscriptionHandle]] = {}
        self._channel_conn: Dict[ChannelKey, StreamConnection] = {}
        self._connections: List[StreamConnection] = []
        self._supervisors: Dict[StreamConnection, asyncio.Task] = {}
        self._pending: Dict[SubMarket, Set[str]] = {}
        self._removals: Dict[SubMarket, Set[str]] = {}
        self._flush_tasks: Dict[SubMarket, asyncio.Task] = {}
        self._failing: Set[StreamConnection] = set()
        self._closed = False

    @property
    def _guard(self) -> asyncio.Lock:
        # Created on first use so it binds to the running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def connections(self) -> List[StreamConnection]:
        return list(self._connections)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connection_for(self, channel: str, sub_market: SubMarket = SubMarket.SPOT) -> Optional[StreamConnection]:
        return self._channel_conn.get((sub_market, channel))

    def consumer_count(self, channel: str, sub_market: SubMarket = SubMarket.SPOT) -> int:
        return len(self._consumers.get((sub_market, channel), []))

    # ==========================================
    # SUBSCRIPTIONS
    # ==========================================

    async def subscribe(
        self,
        channel: str,
        sub_market: SubMarket = SubMarket.SPOT,
        consumer: Optional[Consumer] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> SubscriptionHandle:
        """
        Subscribe to a channel.

        Args:
            channel: Stream name (e.g. "btcusdt@trade" or a listen key)
            sub_market: Sub-market whose stream endpoint carries the channel
            consumer: Async callback per event (otherwise iterate the handle)
            on_error: Async callback for StreamFailure

        Returns:
            SubscriptionHandle

        Raises:
            ConfigError: Manager closed, sub-market disabled or no stream URL
        """
        if self._closed:
            raise ConfigError("Stream manager is closed")
        if not self._api_config.is_enabled(sub_market):
            raise ConfigError(f"Sub-market {sub_market.value} is disabled")
        if not self._api_config.ws_url(sub_market):
            raise ConfigError(f"No stream URL configured for sub-market {sub_market.value}")

        handle = SubscriptionHandle(
            channel,
            sub_market,
            self._config.consumer_queue_size,
            consumer=consumer,
            on_error=on_error,
        )

        async with self._guard:
            key = handle.key
            handles = self._consumers.get(key)
            if handles:
                handles.append(handle)
            else:
                self._consumers[key] = [handle]
                removals = self._removals.get(sub_market)
                if removals and channel in removals and key in self._channel_conn:
                    # Connection still carries it; cancel the removal
                    removals.discard(channel)
                else:
                    self._pending.setdefault(sub_market, set()).add(channel)
                    self._schedule_flush(sub_market)

        handle._start_delivery()
        logger.debug(f"Subscribed consumer to {sub_market.value}:{channel}")
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """
        Remove one consumer.

        The channel is unsubscribed with its last consumer, and the
        connection is closed with its last channel. While the channel's
        connection is still connecting, the removal waits for the next
        batch so a quick re-subscribe keeps the socket.
        """
        idle = None
        async with self._guard:
            key = handle.key
            handles = self._consumers.get(key, [])
            if handle not in handles:
                return

            handles.remove(handle)
            handle._finish()
            if handles:
                return

            del self._consumers[key]
            sub_market = handle.sub_market
            pending = self._pending.get(sub_market)
            if pending and handle.channel in pending:
                pending.discard(handle.channel)
                return

            conn = self._channel_conn.get(key)
            if conn is None:
                return

            if conn.state in (ConnectionState.CONNECTING, ConnectionState.SUBSCRIBING):
                self._removals.setdefault(sub_market, set()).add(handle.channel)
                self._schedule_flush(sub_market)
                return

            del self._channel_conn[key]
            await conn.remove_channels([handle.channel])
            if conn.channel_count == 0 and self._detach(conn):
                idle = conn

        logger.debug(f"Unsubscribed {handle.sub_market.value}:{handle.channel}")
        if idle is not None:
            await self._close_idle(idle)

    def _detach(self, conn: StreamConnection) -> bool:
        """Stop routing to a connection; True if it was still listed."""
        if conn in self._connections:
            self._connections.remove(conn)
            return True
        return False

    async def _close_idle(self, conn: StreamConnection) -> None:
        await conn.close()
        logger.info(f"Closed idle stream connection for {conn.sub_market.value}")

    # ==========================================
    # BATCHING
    # ==========================================

    def _schedule_flush(self, sub_market: SubMarket) -> None:
        if sub_market not in self._flush_tasks:
            self._flush_tasks[sub_market] = asyncio.create_task(self._flush_later(sub_market))

    def _can_absorb(self, conn: StreamConnection) -> bool:
        """Whether a connection may take new channels."""
        if conn.closing or conn in self._failing or conn.reconnect_attempts > 0:
            return False
        if conn.state in (ConnectionState.CONNECTING, ConnectionState.SUBSCRIBING, ConnectionState.ACTIVE):
            return True
        # Created but its supervisor has not started a session yet
        return conn.state == ConnectionState.CLOSED and conn.sessions == 0

    async def _flush_later(self, sub_market: SubMarket) -> None:
        """Apply channel changes requested within the batch window."""
        await asyncio.sleep(self._config.batch_window)

        idle = []
        async with self._guard:
            self._flush_tasks.pop(sub_market, None)
            removals = self._removals.pop(sub_market, set())
            channels = self._pending.pop(sub_market, set())
            if self._closed:
                return

            dropped: Dict[StreamConnection, List[str]] = {}
            for channel in sorted(removals):
                conn = self._channel_conn.pop((sub_market, channel), None)
                if conn is not None:
                    dropped.setdefault(conn, []).append(channel)

            for conn, gone in dropped.items():
                await conn.remove_channels(gone)
                if conn.channel_count == 0 and self._detach(conn):
                    idle.append(conn)

            if channels:
                await self._assign(sub_market, sorted(channels))

        for conn in idle:
            await self._close_idle(conn)

    async def _assign(self, sub_market: SubMarket, remaining: List[str]) -> None:
        """Place channels on live connections first, then on new ones."""
        limit = self._config.max_streams_per_connection

        for conn in self._connections:
            if not remaining:
                break
            if conn.sub_market != sub_market or not self._can_absorb(conn):
                continue
            room = limit - conn.channel_count
            if room <= 0:
                continue
            taken, remaining = remaining[:room], remaining[room:]
            await conn.add_channels(taken)
            for channel in taken:
                self._channel_conn[(sub_market, channel)] = conn

        for start in range(0, len(remaining), limit):
            self._open_connection(sub_market, remaining[start:start + limit])

    def _open_connection(self, sub_market: SubMarket, channels: List[str]) -> StreamConnection:
        conn = StreamConnection(
            self._api_config.ws_url(sub_market),
            sub_market,
            channels,
            self._config,
            self._on_event,
            connect=self._connect,
        )
        self._connections.append(conn)
        for channel in channels:
            self._channel_conn[(sub_market, channel)] = conn

        self._supervisors[conn] = asyncio.create_task(self._supervise(conn))
        logger.info(f"Opening {sub_market.value} stream connection with {len(channels)} channels")
        return conn

    # ==========================================
    # SUPERVISION
    # ==========================================

    async def _supervise(self, conn: StreamConnection) -> None:
        """Run sessions for a connection, reconnecting with backoff."""
        try:
            while True:
                try:
                    await conn.run_session()
                    break
                except StreamConnectionError as e:
                    if conn.closing:
                        break

                    conn.reconnect_attempts += 1
                    max_attempts = self._config.max_reconnect_attempts
                    if max_attempts > 0 and conn.reconnect_attempts > max_attempts:
                        # Flushes must not add channels while the lock is awaited
                        self._failing.add(conn)
                        logger.error(
                            f"Max reconnection attempts ({max_attempts}) reached "
                            f"for {conn.sub_market.value} stream: {e}"
                        )
                        await self._fail_connection(conn, e)
                        break

                    delay = min(
                        self._config.reconnect_delay
                        * (self._config.reconnect_multiplier ** (conn.reconnect_attempts - 1)),
                        self._config.max_reconnect_delay,
                    )
                    logger.warning(
                        f"Stream {conn.sub_market.value} failed ({e}), reconnecting in "
                        f"{delay:.1f}s (attempt {conn.reconnect_attempts})"
                    )
                    if await conn.wait_closed(delay):
                        break
        finally:
            self._supervisors.pop(conn, None)

    async def _fail_connection(self, conn: StreamConnection, error: Exception) -> None:
        """Give up on a connection and fail every consumer it served."""
        async with self._guard:
            self._detach(conn)
            self._failing.discard(conn)

            failure = StreamFailure(conn.channels, conn.reconnect_attempts, str(error))
            removals = self._removals.get(conn.sub_market, set())
            affected = []
            for channel in conn.channels:
                key = (conn.sub_market, channel)
                removals.discard(channel)
                if self._channel_conn.get(key) is conn:
                    del self._channel_conn[key]
                    affected.extend(self._consumers.pop(key, []))

        for handle in affected:
            await handle._fail(failure)

    # ==========================================
    # DISPATCH
    # ==========================================

    def _on_event(self, event: StreamEvent) -> None:
        """Fan an event out to the channel's consumers (never blocks)."""
        for handle in self._consumers.get((event.sub_market, event.channel), ()):
            handle._offer(event)

    # ==========================================
    # SHUTDOWN
    # ==========================================

    async def close(self) -> None:
        """Close every connection and end every subscription."""
        async with self._guard:
            if self._closed:
                return
            self._closed = True

            for task in self._flush_tasks.values():
                task.cancel()
            self._flush_tasks.clear()
            self._pending.clear()
            self._removals.clear()

            connections = list(self._connections)
            self._connections.clear()
            self._channel_conn.clear()

            handles = [h for hs in self._consumers.values() for h in hs]
            self._consumers.clear()

        for conn in connections:
            await conn.close()

        supervisors = list(self._supervisors.values())
        if supervisors:
            await asyncio.gather(*supervisors, return_exceptions=True)

        for handle in handles:
            handle._finish()
            await handle._stop_delivery()

        logger.info("Stream manager closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
