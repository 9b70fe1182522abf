"""
Tests for the stream manager.

Tests:
- Shared connections and reference counted channels
- Batching of subscriptions
- Reconnect and re-subscribe after a drop
- StreamFailure after exhausting reconnect attempts
- Per-consumer backlogs
"""

import asyncio
import dataclasses

import pytest
from unittest.mock import AsyncMock

from binance_access.api.errors import ConfigError, StreamFailure
from binance_access.config import ApiConfig, SubMarket
from binance_access.stream.connection import ConnectionState
from binance_access.stream.manager import StreamManager


TRADE = "btcusdt@trade"


@pytest.fixture
def make_manager(connector, stream_config):
    managers = []

    def factory(config=None, api_config=None):
        manager = StreamManager(config or stream_config, api_config, connect=connector)
        managers.append(manager)
        return manager

    return factory


def is_active(manager, channel=TRADE, sub_market=SubMarket.SPOT):
    conn = manager.connection_for(channel, sub_market)
    return conn is not None and conn.state == ConnectionState.ACTIVE


class TestSharedConnections:
    """Tests for channel sharing across consumers."""

    @pytest.mark.asyncio
    async def test_two_consumers_share_one_connection(self, make_manager, connector, eventually):
        """Two consumers on one channel use exactly one socket."""
        manager = make_manager()
        first = await manager.subscribe(TRADE)
        second = await manager.subscribe(TRADE)

        await eventually(lambda: is_active(manager))

        assert len(connector.sockets) == 1
        assert manager.connection_count == 1
        assert connector.latest.requests("SUBSCRIBE")[0]["params"] == [TRADE]

        connector.latest.push(TRADE, {"e": "trade", "t": 1})
        assert (await asyncio.wait_for(first.__anext__(), 1.0)).data["t"] == 1
        assert (await asyncio.wait_for(second.__anext__(), 1.0)).data["t"] == 1

        await manager.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_one_keeps_connection(self, make_manager, connector, eventually):
        manager = make_manager()
        first = await manager.subscribe(TRADE)
        second = await manager.subscribe(TRADE)
        await eventually(lambda: is_active(manager))
        ws = connector.latest

        await manager.unsubscribe(first)

        assert ws.closed is False
        assert ws.requests("UNSUBSCRIBE") == []
        assert manager.connection_count == 1
        assert manager.consumer_count(TRADE) == 1

        ws.push(TRADE, {"e": "trade", "t": 2})
        assert (await asyncio.wait_for(second.__anext__(), 1.0)).data["t"] == 2

        await manager.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_both_closes_connection(self, make_manager, connector, eventually):
        manager = make_manager()
        first = await manager.subscribe(TRADE)
        second = await manager.subscribe(TRADE)
        await eventually(lambda: is_active(manager))
        conn = manager.connection_for(TRADE)

        await manager.unsubscribe(first)
        await manager.unsubscribe(second)

        assert connector.latest.closed is True
        assert manager.connection_count == 0
        await eventually(lambda: conn.state == ConnectionState.CLOSED)

        await manager.close()

    @pytest.mark.asyncio
    async def test_partial_unsubscribe_sends_unsubscribe(self, make_manager, connector, eventually):
        """Removing one of several channels keeps the socket open."""
        manager = make_manager()
        trade = await manager.subscribe(TRADE)
        await manager.subscribe("ethusdt@trade")
        await eventually(lambda: is_active(manager))

        await manager.unsubscribe(trade)

        unsubscribes = connector.latest.requests("UNSUBSCRIBE")
        assert unsubscribes[0]["params"] == [TRADE]
        assert connector.latest.closed is False

        await manager.close()

    @pytest.mark.asyncio
    async def test_iteration_ends_after_unsubscribe(self, make_manager, eventually):
        manager = make_manager()
        handle = await manager.subscribe(TRADE)
        await eventually(lambda: is_active(manager))

        await manager.unsubscribe(handle)

        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(handle.__anext__(), 1.0)
        assert handle.active is False

        await manager.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_twice_is_harmless(self, make_manager, eventually):
        manager = make_manager()
        handle = await manager.subscribe(TRADE)
        await eventually(lambda: is_active(manager))

        await manager.unsubscribe(handle)
        await manager.unsubscribe(handle)

        await manager.close()


class TestBatching:
    """Tests for batched connect-with-subscribe."""

    @pytest.mark.asyncio
    async def test_close_together_requests_share_handshake(self, make_manager, connector, eventually):
        manager = make_manager()
        for channel in ("ethusdt@trade", TRADE, "btcusdt@depth"):
            await manager.subscribe(channel)

        await eventually(lambda: is_active(manager))

        assert len(connector.sockets) == 1
        subscribes = connector.latest.requests("SUBSCRIBE")
        assert len(subscribes) == 1
        assert subscribes[0]["params"] == ["btcusdt@depth", TRADE, "ethusdt@trade"]

        await manager.close()

    @pytest.mark.asyncio
    async def test_live_connection_absorbs_new_channel(self, make_manager, connector, eventually):
        manager = make_manager()
        await manager.subscribe(TRADE)
        await eventually(lambda: is_active(manager))

        await manager.subscribe("ethusdt@trade")
        await eventually(lambda: manager.connection_for("ethusdt@trade") is not None)

        assert len(connector.sockets) == 1
        assert connector.latest.requests("SUBSCRIBE")[-1]["params"] == ["ethusdt@trade"]

        await manager.close()

    @pytest.mark.asyncio
    async def test_channel_limit_opens_more_connections(self, make_manager, connector, stream_config, eventually):
        config = dataclasses.replace(stream_config, max_streams_per_connection=2)
        manager = make_manager(config=config)
        for channel in ("a@trade", "b@trade", "c@trade"):
            await manager.subscribe(channel)

        await eventually(lambda: len(connector.sockets) == 2)
        await eventually(lambda: is_active(manager, "c@trade"))

        assert manager.connection_for("a@trade") is manager.connection_for("b@trade")
        assert manager.connection_for("c@trade") is not manager.connection_for("a@trade")

        await manager.close()

    @pytest.mark.asyncio
    async def test_sub_markets_use_separate_connections(self, make_manager, connector, eventually):
        manager = make_manager()
        await manager.subscribe(TRADE)
        await manager.subscribe(TRADE, SubMarket.FUTURES)

        await eventually(lambda: is_active(manager) and is_active(manager, TRADE, SubMarket.FUTURES))

        urls = sorted(url for url, _ in connector.calls)
        assert urls == [
            "wss://fstream.binance.com/stream",
            "wss://stream.binance.com:9443/stream",
        ]

        await manager.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_before_flush_never_connects(self, make_manager, connector):
        manager = make_manager()
        handle = await manager.subscribe(TRADE)
        await manager.unsubscribe(handle)

        await asyncio.sleep(0.05)
        assert connector.calls == []

        await manager.close()


class TestConcurrentChanges:
    """Tests for subscribe/unsubscribe racing on one channel."""

    @pytest.mark.asyncio
    async def test_resubscribe_during_connect_keeps_socket(self, make_manager, connector, eventually):
        """Unsubscribe and subscribe together while connecting: no close-then-reopen."""
        connector.auto_ack = False
        manager = make_manager()
        first = await manager.subscribe(TRADE)
        await eventually(lambda: connector.sockets and connector.latest.sent)
        conn = manager.connection_for(TRADE)
        assert conn.state == ConnectionState.SUBSCRIBING

        _, second = await asyncio.gather(manager.unsubscribe(first), manager.subscribe(TRADE))

        assert manager.consumer_count(TRADE) == 1
        assert manager.connection_for(TRADE) is conn

        await asyncio.sleep(0.05)  # Past the batch window

        ws = connector.latest
        assert len(connector.sockets) == 1
        assert ws.closed is False
        assert ws.requests("UNSUBSCRIBE") == []
        assert manager.connection_for(TRADE) is conn

        ws.push(TRADE, {"e": "trade", "t": 3})
        assert (await asyncio.wait_for(second.__anext__(), 1.0)).data["t"] == 3

        await manager.close()

    @pytest.mark.asyncio
    async def test_subscribe_then_unsubscribe_together(self, make_manager, connector, eventually):
        connector.auto_ack = False
        manager = make_manager()
        first = await manager.subscribe(TRADE)
        await eventually(lambda: connector.sockets and connector.latest.sent)

        second, _ = await asyncio.gather(manager.subscribe(TRADE), manager.unsubscribe(first))
        await asyncio.sleep(0.05)

        assert manager.consumer_count(TRADE) == 1
        assert second.active is True
        assert len(connector.sockets) == 1
        assert connector.latest.closed is False

        await manager.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_during_connect_closes_after_batch(self, make_manager, connector, eventually):
        connector.auto_ack = False
        manager = make_manager()
        handle = await manager.subscribe(TRADE)
        await eventually(lambda: connector.sockets and connector.latest.sent)
        conn = manager.connection_for(TRADE)

        await manager.unsubscribe(handle)

        await eventually(lambda: conn.state == ConnectionState.CLOSED)
        assert manager.connection_count == 0
        assert manager.connection_for(TRADE) is None
        assert len(connector.sockets) == 1

        await manager.close()

    @pytest.mark.asyncio
    async def test_slow_close_does_not_block_subscribe(self, make_manager, connector, eventually):
        """Closing an idle socket happens outside the manager lock."""
        manager = make_manager()
        handle = await manager.subscribe(TRADE)
        await eventually(lambda: is_active(manager))
        ws = connector.latest
        ws.close_delay = 0.5

        closing = asyncio.create_task(manager.unsubscribe(handle))
        await eventually(lambda: ws.close_started)

        other = await asyncio.wait_for(manager.subscribe("ethusdt@trade"), 0.2)
        assert other.active is True
        assert not closing.done()

        await closing
        await manager.close()


class TestReconnect:
    """Tests for reconnect supervision."""

    @pytest.mark.asyncio
    async def test_new_channel_not_added_to_failing_connection(
        self, make_manager, connector, stream_config, eventually
    ):
        """A channel requested during another connection's backoff gets its own attempts."""
        config = dataclasses.replace(stream_config, reconnect_delay=0.1, max_reconnect_delay=0.2)
        manager = make_manager(config=config)
        connector.fail_next = 100

        first = await manager.subscribe("a@trade")
        await eventually(
            lambda: manager.connection_for("a@trade") is not None
            and manager.connection_for("a@trade").reconnect_attempts >= 1
        )
        failing = manager.connection_for("a@trade")

        second = await manager.subscribe("b@trade")
        await eventually(lambda: manager.connection_for("b@trade") is not None)
        assert manager.connection_for("b@trade") is not failing
        assert "b@trade" not in failing.channels

        with pytest.raises(StreamFailure) as first_exc:
            await asyncio.wait_for(first.__anext__(), 2.0)
        assert first_exc.value.channels == ("a@trade",)

        with pytest.raises(StreamFailure) as second_exc:
            await asyncio.wait_for(second.__anext__(), 2.0)
        assert second_exc.value.channels == ("b@trade",)
        assert second_exc.value.attempts == 3

        await manager.close()

    @pytest.mark.asyncio
    async def test_drop_reconnects_and_resubscribes(self, make_manager, connector, eventually):
        """A forced drop reconnects and re-subscribes the same channels."""
        manager = make_manager()
        handle = await manager.subscribe(TRADE)
        await manager.subscribe("ethusdt@trade")
        await eventually(lambda: is_active(manager))

        connector.latest.drop()

        await eventually(lambda: len(connector.sockets) == 2 and is_active(manager))

        resubscribe = connector.latest.requests("SUBSCRIBE")[0]
        assert resubscribe["params"] == [TRADE, "ethusdt@trade"]

        # Consumers keep receiving without any action
        connector.latest.push(TRADE, {"e": "trade", "t": 9})
        assert (await asyncio.wait_for(handle.__anext__(), 1.0)).data["t"] == 9

        await manager.close()

    @pytest.mark.asyncio
    async def test_attempt_counter_resets_after_active(self, make_manager, connector, eventually):
        manager = make_manager()
        await manager.subscribe(TRADE)
        await eventually(lambda: is_active(manager))

        for expected_sockets in (2, 3, 4):
            connector.latest.drop()
            await eventually(lambda: len(connector.sockets) == expected_sockets and is_active(manager))

        assert manager.connection_for(TRADE).reconnect_attempts == 0

        await manager.close()

    @pytest.mark.asyncio
    async def test_stream_failure_after_max_attempts(self, make_manager, connector, eventually):
        """Exhausted reconnects fail every consumer with StreamFailure."""
        on_error = AsyncMock()
        manager = make_manager()
        connector.fail_next = 100

        handle = await manager.subscribe(TRADE, on_error=on_error)

        with pytest.raises(StreamFailure) as exc_info:
            await asyncio.wait_for(handle.__anext__(), 2.0)

        assert exc_info.value.channels == (TRADE,)
        assert exc_info.value.attempts == 3
        assert len(connector.calls) == 3
        on_error.assert_awaited_once()
        assert manager.connection_count == 0
        assert manager.connection_for(TRADE) is None

        await manager.close()

    @pytest.mark.asyncio
    async def test_close_interrupts_backoff(self, make_manager, connector, stream_config):
        config = dataclasses.replace(stream_config, reconnect_delay=30.0, max_reconnect_delay=30.0)
        manager = make_manager(config=config)
        connector.fail_next = 100

        await manager.subscribe(TRADE)
        await asyncio.sleep(0.05)

        await asyncio.wait_for(manager.close(), 1.0)
        assert len(connector.calls) == 1


class TestConsumers:
    """Tests for per-consumer delivery."""

    @pytest.mark.asyncio
    async def test_callback_consumer_receives_in_order(self, make_manager, connector, eventually):
        received = []

        async def consumer(event):
            received.append(event.data["t"])

        manager = make_manager()
        await manager.subscribe(TRADE, consumer=consumer)
        await eventually(lambda: is_active(manager))

        for t in range(5):
            connector.latest.push(TRADE, {"e": "trade", "t": t})

        await eventually(lambda: len(received) == 5)
        assert received == [0, 1, 2, 3, 4]

        await manager.close()

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_delivering(self, make_manager, connector, eventually):
        received = []

        async def consumer(event):
            if event.data["t"] == 0:
                raise RuntimeError("consumer bug")
            received.append(event.data["t"])

        manager = make_manager()
        await manager.subscribe(TRADE, consumer=consumer)
        await eventually(lambda: is_active(manager))

        connector.latest.push(TRADE, {"t": 0})
        connector.latest.push(TRADE, {"t": 1})

        await eventually(lambda: received == [1])
        await manager.close()

    @pytest.mark.asyncio
    async def test_slow_consumer_only_grows_own_backlog(
        self, make_manager, connector, stream_config, eventually
    ):
        """A consumer that never reads drops its own overflow only."""
        config = dataclasses.replace(stream_config, consumer_queue_size=2)
        received = []

        async def fast(event):
            received.append(event.data["t"])

        manager = make_manager(config=config)
        slow = await manager.subscribe(TRADE)
        await manager.subscribe(TRADE, consumer=fast)
        await eventually(lambda: is_active(manager))

        for t in range(5):
            connector.latest.push(TRADE, {"t": t})
            await eventually(lambda: len(received) == t + 1)

        assert received == [0, 1, 2, 3, 4]
        assert slow.backlog == 2
        assert slow.dropped == 3

        # The oldest events are kept
        assert (await slow.__anext__()).data["t"] == 0
        assert (await slow.__anext__()).data["t"] == 1

        await manager.close()


class TestManagerLifecycle:
    """Tests for configuration checks and shutdown."""

    @pytest.mark.asyncio
    async def test_disabled_sub_market(self, make_manager):
        manager = make_manager(api_config=ApiConfig(enabled_sub_markets={SubMarket.SPOT}))
        with pytest.raises(ConfigError, match="disabled"):
            await manager.subscribe(TRADE, SubMarket.FUTURES)

    @pytest.mark.asyncio
    async def test_sub_market_without_streams(self, make_manager):
        manager = make_manager()
        with pytest.raises(ConfigError, match="No stream URL"):
            await manager.subscribe("anything", SubMarket.WALLET)

    @pytest.mark.asyncio
    async def test_close_ends_iteration_and_sockets(self, make_manager, connector, eventually):
        manager = make_manager()
        handle = await manager.subscribe(TRADE)
        await eventually(lambda: is_active(manager))

        await manager.close()

        assert connector.latest.closed is True
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(handle.__anext__(), 1.0)

    def test_built_outside_event_loop(self, connector, stream_config):
        """A manager created before the loop runs works inside it."""
        manager = StreamManager(stream_config, connect=connector)

        async def use():
            handle = await manager.subscribe(TRADE)
            await manager.unsubscribe(handle)
            await manager.close()

        asyncio.run(use())
        assert connector.calls == []

    @pytest.mark.asyncio
    async def test_subscribe_after_close_raises(self, make_manager):
        manager = make_manager()
        await manager.close()
        with pytest.raises(ConfigError):
            await manager.subscribe(TRADE)

    @pytest.mark.asyncio
    async def test_async_context_manager(self, connector, stream_config, eventually):
        async with StreamManager(stream_config, connect=connector) as manager:
            await manager.subscribe(TRADE)
            await eventually(lambda: is_active(manager))
        assert connector.latest.closed is True
