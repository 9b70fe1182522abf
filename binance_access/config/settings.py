"""
Configuration dataclasses for the Binance access layer.

All configuration parameters are defined here with sensible defaults.
Values can be overridden via config.yaml or environment variables
(see binance_access.utils.config_loader).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set


class SubMarket(Enum):
    """Binance product lines, each with its own base URL."""
    SPOT = "spot"
    MARGIN = "margin"
    FUTURES = "futures"
    SAVINGS = "savings"
    WALLET = "wallet"


# ===========================================
# ENDPOINT DEFAULTS
# ===========================================

PRODUCTION_REST_URL = "https://api.binance.com"
PRODUCTION_FUTURES_REST_URL = "https://fapi.binance.com"
PRODUCTION_WS_URL = "wss://stream.binance.com:9443/stream"
PRODUCTION_FUTURES_WS_URL = "wss://fstream.binance.com/stream"

TESTNET_REST_URL = "https://testnet.binance.vision"
TESTNET_FUTURES_REST_URL = "https://testnet.binancefuture.com"
TESTNET_WS_URL = "wss://testnet.binance.vision/stream"
TESTNET_FUTURES_WS_URL = "wss://stream.binancefuture.com/stream"

BINANCE_US_REST_URL = "https://api.binance.us"
BINANCE_US_WS_URL = "wss://stream.binance.us:9443/stream"


def _rest_urls(default: str, futures: str) -> Dict[SubMarket, str]:
    # Margin, savings and wallet live under /sapi on the spot host
    return {
        SubMarket.SPOT: default,
        SubMarket.MARGIN: default,
        SubMarket.FUTURES: futures,
        SubMarket.SAVINGS: default,
        SubMarket.WALLET: default,
    }


def _ws_urls(default: str, futures: Optional[str]) -> Dict[SubMarket, str]:
    urls = {
        SubMarket.SPOT: default,
        SubMarket.MARGIN: default,
    }
    if futures:
        urls[SubMarket.FUTURES] = futures
    return urls


# ===========================================
# REST API CONFIGURATION
# ===========================================

@dataclass
class ApiConfig:
    """REST and WebSocket endpoint configuration."""

    rest_urls: Dict[SubMarket, str] = field(
        default_factory=lambda: _rest_urls(PRODUCTION_REST_URL, PRODUCTION_FUTURES_REST_URL)
    )
    ws_urls: Dict[SubMarket, str] = field(
        default_factory=lambda: _ws_urls(PRODUCTION_WS_URL, PRODUCTION_FUTURES_WS_URL)
    )

    recv_window: int = 5000  # milliseconds, 0 = do not send
    request_timeout: float = 30.0  # seconds
    api_key_header: str = "X-API-KEY"

    # Feature toggles per sub-market
    enabled_sub_markets: Set[SubMarket] = field(
        default_factory=lambda: set(SubMarket)
    )

    # Binance.US exposes a few wallet endpoints under different paths
    binance_us_api: bool = False

    @classmethod
    def testnet(cls) -> "ApiConfig":
        """Spot and futures testnet endpoints."""
        return cls(
            rest_urls=_rest_urls(TESTNET_REST_URL, TESTNET_FUTURES_REST_URL),
            ws_urls=_ws_urls(TESTNET_WS_URL, TESTNET_FUTURES_WS_URL),
        )

    @classmethod
    def binance_us(cls) -> "ApiConfig":
        """Binance.US endpoints (no futures)."""
        urls = _rest_urls(BINANCE_US_REST_URL, BINANCE_US_REST_URL)
        del urls[SubMarket.FUTURES]
        return cls(
            rest_urls=urls,
            ws_urls=_ws_urls(BINANCE_US_WS_URL, None),
            enabled_sub_markets={
                SubMarket.SPOT,
                SubMarket.MARGIN,
                SubMarket.SAVINGS,
                SubMarket.WALLET,
            },
            binance_us_api=True,
        )

    def rest_url(self, sub_market: SubMarket) -> Optional[str]:
        """Get REST base URL for a sub-market (None if not configured)."""
        return self.rest_urls.get(sub_market)

    def ws_url(self, sub_market: SubMarket) -> Optional[str]:
        """Get WebSocket URL for a sub-market (None if it has no streams)."""
        return self.ws_urls.get(sub_market)

    def is_enabled(self, sub_market: SubMarket) -> bool:
        """Check the feature toggle for a sub-market."""
        return sub_market in self.enabled_sub_markets


@dataclass
class RateLimitConfig:
    """Request weight limits tracked per sub-market."""

    window_seconds: float = 60.0
    weight_limits: Dict[SubMarket, int] = field(
        default_factory=lambda: {
            SubMarket.SPOT: 6000,
            SubMarket.MARGIN: 12000,
            SubMarket.FUTURES: 2400,
            SubMarket.SAVINGS: 12000,
            SubMarket.WALLET: 12000,
        }
    )
    buffer: float = 0.9  # Use this fraction of the limit
    used_weight_header_prefix: str = "X-MBX-USED-WEIGHT-"

    def usable_limit(self, sub_market: SubMarket) -> float:
        """Weight that may be consumed before dispatch is delayed."""
        return self.weight_limits.get(sub_market, 1200) * self.buffer


@dataclass
class RetryConfig:
    """Retry behaviour for the transport client."""

    max_retries: int = 3  # Network/server retries for idempotent calls
    rate_limit_retries: int = 3  # Retries after 429/418
    base_delay: float = 0.5
    max_delay: float = 60.0  # Backoff ceiling
    exponential_base: float = 2.0
    jitter: bool = True  # Add randomness to prevent thundering herd


# ===========================================
# STREAMING CONFIGURATION
# ===========================================

@dataclass
class StreamConfig:
    """WebSocket stream manager configuration."""

    # Subscriptions requested within this window share one handshake
    batch_window: float = 0.05
    max_streams_per_connection: int = 200

    connect_timeout: float = 10.0
    subscribe_timeout: float = 10.0
    close_timeout: float = 5.0

    # Heartbeat: no frame within heartbeat_interval triggers a ping,
    # no pong within pong_timeout fails the connection
    heartbeat_interval: float = 30.0
    pong_timeout: float = 10.0

    # Reconnection
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 60.0
    reconnect_multiplier: float = 2.0
    max_reconnect_attempts: int = 10  # 0 = unlimited

    # Per-consumer backlog
    consumer_queue_size: int = 1000


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    file_path: Optional[str] = None
    max_size_mb: int = 10
    backup_count: int = 5


# ===========================================
# AGGREGATE CONFIGURATION
# ===========================================

@dataclass
class AccessConfig:
    """Complete configuration combining all sub-configs."""

    api: ApiConfig = field(default_factory=ApiConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        for sub_market in self.api.enabled_sub_markets:
            if not self.api.rest_url(sub_market):
                errors.append(f"No REST URL configured for enabled sub-market {sub_market.value}")

        if self.api.recv_window < 0 or self.api.recv_window > 60000:
            errors.append(f"recv_window must be within 0..60000 ms, got {self.api.recv_window}")

        if self.api.request_timeout <= 0:
            errors.append("request_timeout must be positive")

        if not 0 < self.rate_limit.buffer <= 1:
            errors.append(f"rate limit buffer must be within (0, 1], got {self.rate_limit.buffer}")

        if self.retry.max_retries < 0 or self.retry.rate_limit_retries < 0:
            errors.append("retry counts cannot be negative")

        if self.retry.base_delay > self.retry.max_delay:
            errors.append("retry base_delay exceeds max_delay")

        if self.stream.max_streams_per_connection < 1:
            errors.append("max_streams_per_connection must be at least 1")

        if self.stream.reconnect_delay > self.stream.max_reconnect_delay:
            errors.append("reconnect_delay exceeds max_reconnect_delay")

        return errors
