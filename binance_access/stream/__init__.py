"""
Binance Streaming Module.

WebSocket market and user data streams:
- StreamManager: shared connections, batching, reconnection
- StreamConnection: one socket session state machine
- StreamEvent: decoded event delivered to consumers

Usage:
    from binance_access.stream import StreamManager

    async with StreamManager() as manager:
        handle = await manager.subscribe("btcusdt@trade")
        async for event in handle:
            print(event.data["p"])
"""

from .events import StreamEvent, FrameKind, decode_frame, classify_frame, control_message
from .connection import ConnectionState, StreamConnection, StreamConnectionError
from .manager import StreamManager, SubscriptionHandle

__all__ = [
    "StreamEvent",
    "FrameKind",
    "decode_frame",
    "classify_frame",
    "control_message",
    "ConnectionState",
    "StreamConnection",
    "StreamConnectionError",
    "StreamManager",
    "SubscriptionHandle",
]
