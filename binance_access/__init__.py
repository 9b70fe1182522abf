"""
Binance Access Layer.

Async client access to Binance REST and WebSocket APIs across the spot,
margin, futures, savings and wallet sub-markets.

Usage:
    from binance_access import BinanceClient, StreamManager

    async with BinanceClient.from_env() as client:
        account = await client.account.account_info()

    async with StreamManager() as manager:
        handle = await manager.subscribe("btcusdt@trade")
        async for event in handle:
            print(event.data)
"""

from .config import AccessConfig, ApiConfig, StreamConfig, SubMarket
from .api import (
    BinanceClient,
    Credentials,
    OrderSide,
    OrderType,
    TimeInForce,
    BinanceAccessError,
    ConfigError,
    ParameterError,
    ExchangeError,
    TimestampError,
    RateLimited,
    NetworkError,
    Indeterminate,
    DecodeError,
    StreamFailure,
)
from .stream import StreamEvent, StreamManager, SubscriptionHandle

__version__ = "0.1.0"

__all__ = [
    "AccessConfig",
    "ApiConfig",
    "StreamConfig",
    "SubMarket",
    "BinanceClient",
    "Credentials",
    "OrderSide",
    "OrderType",
    "TimeInForce",
    "BinanceAccessError",
    "ConfigError",
    "ParameterError",
    "ExchangeError",
    "TimestampError",
    "RateLimited",
    "NetworkError",
    "Indeterminate",
    "DecodeError",
    "StreamFailure",
    "StreamEvent",
    "StreamManager",
    "SubscriptionHandle",
]
