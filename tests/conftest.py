"""Shared fixtures: in-memory WebSocket and connector for stream tests."""

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from binance_access.config import StreamConfig


class FakeWebSocket:
    """In-memory WebSocket that acks SUBSCRIBE/UNSUBSCRIBE requests."""

    def __init__(self, auto_ack: bool = True, answer_pings: bool = True):
        self.auto_ack = auto_ack
        self.answer_pings = answer_pings
        self.sent = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_started = False
        self.close_delay = 0.0
        self.pings = 0

    async def send(self, message):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        frame = json.loads(message)
        self.sent.append(frame)
        if self.auto_ack and frame.get("method") in ("SUBSCRIBE", "UNSUBSCRIBE"):
            self.inbound.put_nowait(json.dumps({"result": None, "id": frame["id"]}))

    async def recv(self):
        item = await self.inbound.get()
        if isinstance(item, BaseException):
            # Stay closed for any later recv
            self.inbound.put_nowait(item)
            raise item
        return item

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self):
        self.close_started = True
        if self.close_delay and not self.closed:
            # Slow closing handshake
            await asyncio.sleep(self.close_delay)
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(ConnectionClosedOK(None, None))

    def push(self, stream, data):
        """Deliver a combined-stream frame."""
        self.inbound.put_nowait(json.dumps({"stream": stream, "data": data}))

    def push_raw(self, text):
        self.inbound.put_nowait(text)

    def drop(self):
        """Simulate an abnormal socket close."""
        self.closed = True
        self.inbound.put_nowait(ConnectionClosedError(None, None))

    def requests(self, method):
        return [frame for frame in self.sent if frame.get("method") == method]


class FakeConnector:
    """Stands in for websockets.connect."""

    def __init__(self):
        self.sockets = []
        self.calls = []
        self.fail_next = 0
        self.auto_ack = True

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.fail_next > 0:
            self.fail_next -= 1
            raise OSError("Connection refused")
        ws = FakeWebSocket(auto_ack=self.auto_ack)
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def stream_config():
    """Stream settings scaled down for fast tests."""
    return StreamConfig(
        batch_window=0.01,
        connect_timeout=1.0,
        subscribe_timeout=1.0,
        close_timeout=0.1,
        heartbeat_interval=5.0,
        pong_timeout=0.5,
        reconnect_delay=0.01,
        max_reconnect_delay=0.05,
        max_reconnect_attempts=2,
        consumer_queue_size=100,
    )
