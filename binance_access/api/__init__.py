"""
Binance REST API Module.

Provides the request pipeline and client for Binance REST endpoints:
- Authentication (HMAC-SHA256 over the canonical query string)
- Endpoint catalogue (path, method, auth level, sub-market, weight)
- Request building (timestamp, recvWindow, signature)
- Transport (rate limits, retries, error classification)
- Client gateways per sub-market

Usage:
    # Public API (no auth needed)
    from binance_access.api import BinanceClient

    client = BinanceClient()
    book = await client.market.depth("BTCUSDT", limit=10)

    # Private API (requires credentials)
    from binance_access.api import BinanceClient, OrderSide, OrderType

    client = BinanceClient.from_env()  # Uses BINANCE_API_KEY, BINANCE_API_SECRET
    account = await client.account.account_info()
    order = await client.account.place_order(
        symbol="BTCUSDT",
        side=OrderSide.BUY,
        order_type=OrderType.LIMIT,
        quantity="0.001",
        price="50000",
    )

    # Low-level transport
    from binance_access.api import TransportClient, RequestBuilder, endpoints

    transport = TransportClient(RequestBuilder(ApiConfig(), Signer(creds)))
    result = await transport.execute(endpoints.OPEN_ORDERS, {"symbol": "BTCUSDT"})
"""

# Authentication
from .auth import (
    Credentials,
    Signer,
    sign,
    sign_params,
    load_credentials_from_env,
    load_credentials_from_file,
)

# Encoding
from .encoding import ArrayStyle, canonical_encode, encode_value

# Endpoints
from . import endpoints
from .endpoints import AuthLevel, Endpoint, HttpMethod

# Error handling
from .errors import (
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
    ErrorInfo,
    ErrorCategory,
    classify_code,
    calculate_backoff,
)

# Request pipeline
from .request_builder import PreparedRequest, RequestBuilder
from .rate_limiter import RateLimitState
from .transport import TransportClient

# Client
from .client import (
    BinanceClient,
    MarketGateway,
    AccountGateway,
    MarginGateway,
    FuturesGateway,
    SavingsGateway,
    WalletGateway,
    UserStreamGateway,
    OrderSide,
    OrderType,
    TimeInForce,
)


__all__ = [
    # Authentication
    "Credentials",
    "Signer",
    "sign",
    "sign_params",
    "load_credentials_from_env",
    "load_credentials_from_file",
    # Encoding
    "ArrayStyle",
    "canonical_encode",
    "encode_value",
    # Endpoints
    "endpoints",
    "AuthLevel",
    "Endpoint",
    "HttpMethod",
    # Errors
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
    "ErrorInfo",
    "ErrorCategory",
    "classify_code",
    "calculate_backoff",
    # Request pipeline
    "PreparedRequest",
    "RequestBuilder",
    "RateLimitState",
    "TransportClient",
    # Client
    "BinanceClient",
    "MarketGateway",
    "AccountGateway",
    "MarginGateway",
    "FuturesGateway",
    "SavingsGateway",
    "WalletGateway",
    "UserStreamGateway",
    "OrderSide",
    "OrderType",
    "TimeInForce",
]
